class PsmError(Exception):
    """Base class for every error the manager reports to an operator."""


class ConfigError(PsmError):
    def __init__(self, path, detail: str):
        self.path = path
        self.detail = detail
        super().__init__(f"Invalid config {path}: {detail}")


class SlotNotFound(PsmError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Server slot '{name}' not found")


class StatusMismatch(PsmError):
    def __init__(self, name: str, expected: str, current: str):
        self.name = name
        self.expected = expected
        self.current = current
        super().__init__(f"Server slot '{name}' is {current} (expected {expected})")


class UnknownInstanceClass(PsmError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown instance class: {name}")


class TransientProviderError(PsmError):
    """Cloud-side failure that is worth retrying (capacity, pricing, listing)."""


class NoAvailableInstance(TransientProviderError):
    def __init__(self, instance_types: list[str], regions: list[str]):
        self.instance_types = list(instance_types)
        self.regions = list(regions)
        super().__init__(
            f"No available instance of {', '.join(instance_types)} "
            f"in {', '.join(regions)}"
        )


class RemoteExecutionFailure(PsmError):
    def __init__(self, host: str, script: str, detail: str):
        self.host = host
        self.script = script
        self.detail = detail
        super().__init__(f"{script} on {host} failed: {detail}")


class TransferFailure(PsmError):
    def __init__(self, host: str, path: str, detail: str):
        self.host = host
        self.path = path
        self.detail = detail
        super().__init__(f"Transfer of {path} ({host}) failed: {detail}")


class ReadinessTimeout(PsmError, TimeoutError):
    def __init__(self, what: str, attempts: int, interval: float):
        self.what = what
        self.attempts = attempts
        self.interval = interval
        super().__init__(
            f"Timed out waiting for {what} "
            f"({attempts} checks, {interval:g}s apart)"
        )


class PersistenceError(PsmError):
    def __init__(self, path, detail: str):
        self.path = path
        self.detail = detail
        super().__init__(f"State file {path}: {detail}")


class StepFailed(PsmError):
    """A provisioning or decommission step failed; `cause` holds the original error."""

    def __init__(self, step: str, cause: BaseException):
        self.step = step
        self.cause = cause
        super().__init__(f"{step}: {cause}")
