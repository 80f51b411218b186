from pydantic import BaseModel, ConfigDict, Field


class CreateVMRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str | None = None
    server_id: str | None = None
    instance_type: str | None = Field(default=None, alias="instanceType")
    vm_id: str | None = Field(default=None, alias="vmId")


class CreateVMResponse(BaseModel):
    message: str
    vmId: str
    status: str
    estimatedTime: str
    error: str | None = None


class ActionResponse(BaseModel):
    success: bool
    message: str


class DeleteVMResponse(BaseModel):
    message: str
    vmId: str


class RunScriptRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    script_name: str | None = Field(default=None, alias="scriptName")
    script_content: str | None = Field(default=None, alias="scriptContent")


class RecordMetricRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    metric_type: str | None = Field(default=None, alias="metricType")
    value: float | None = None
    unit: str | None = None
