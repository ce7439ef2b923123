from __future__ import annotations


class LlmSetupError(RuntimeError):
    """Base class for everything that can go wrong while provisioning or running the built-in LLM."""


class DownloadCancelled(LlmSetupError):
    def __init__(self, message: str = "Download cancelled") -> None:
        super().__init__(message)


class DownloadFailed(LlmSetupError):
    """Every mirror failed. The message lists each mirror's reason."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        if self.errors:
            super().__init__(f"download failed: {'; '.join(self.errors)}")
        else:
            super().__init__("download failed")


class ModelIntegrityError(LlmSetupError):
    pass


class ModelNotFoundError(LlmSetupError):
    pass


class RuntimeUnavailable(LlmSetupError):
    pass


class ServerStartError(LlmSetupError):
    pass


class ResourceBusyError(LlmSetupError):
    pass


class AutoStartFailed(LlmSetupError):
    """Every (backend, tier) combination failed. `attempts` holds one line per try."""

    def __init__(self, attempts: list[str]) -> None:
        self.attempts = list(attempts)
        super().__init__("auto start failed after trying fallbacks")
