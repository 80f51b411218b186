class VMGatewayError(Exception):
    """Base class for errors the HTTP layer maps to a client response."""

    status_code = 500

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)


class VMValidationError(VMGatewayError):
    status_code = 400


class VMNotFoundError(VMGatewayError):
    status_code = 404

    def __init__(self, vm_id: str):
        self.vm_id = vm_id
        super().__init__("VM not found")


class InvalidTransitionError(VMGatewayError):
    status_code = 409

    def __init__(self, vm_id: str, current: str, target: str):
        self.vm_id = vm_id
        self.current = current
        self.target = target
        super().__init__(f"VM {vm_id} cannot move from {current} to {target}")


class UnsupportedActionError(VMGatewayError):
    status_code = 400

    def __init__(self, action: str):
        self.action = action
        super().__init__("Unsupported agent action")


class NoUpstreamAgentError(VMGatewayError):
    status_code = 400

    def __init__(self, vm_id: str):
        self.vm_id = vm_id
        super().__init__("No upstream agent URL")


class VMAlreadyExistsError(VMGatewayError):
    status_code = 409

    def __init__(self, vm_id: str):
        self.vm_id = vm_id
        super().__init__(f"VM {vm_id} already exists")


class ProvisioningFailedError(VMGatewayError):
    def __init__(self, vm_id: str, reason: str):
        self.vm_id = vm_id
        self.reason = reason
        super().__init__(reason)
