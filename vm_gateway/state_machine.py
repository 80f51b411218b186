from vm_gateway.models import VMStatus


# Creation retries overwrite the record instead of transitioning it, so
# ERROR only leaves through deletion.
ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    VMStatus.INITIALIZING.value: {
        VMStatus.READY.value,
        VMStatus.ERROR.value,
        VMStatus.STOPPED.value,
    },
    VMStatus.READY.value: {VMStatus.STOPPED.value, VMStatus.INITIALIZING.value},
    VMStatus.STOPPED.value: {VMStatus.READY.value, VMStatus.INITIALIZING.value},
    VMStatus.ERROR.value: {VMStatus.STOPPED.value},
}


def can_transition(current: str, target: str) -> bool:
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, set())
