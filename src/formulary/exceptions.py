from typing import Any


class FormularyError(Exception):
    pass


class ConfigError(FormularyError):
    pass


class ParseError(FormularyError):
    def __init__(
        self, message: str, formula: str | None = None, origin: str | None = None
    ) -> None:
        self.formula = formula
        self.origin = origin
        where = origin or formula
        super().__init__(f"{where}: {message}" if where else message)


class IntegrityConfigError(ParseError):
    pass


class ResolutionError(FormularyError):
    pass


class UnknownDependencyError(ResolutionError):
    def __init__(self, missing: str, requester: str | None = None) -> None:
        self.missing = missing
        self.requester = requester
        if requester:
            message = f"Unknown formula '{missing}' (required by '{requester}')."
        else:
            message = f"Unknown formula '{missing}'."
        super().__init__(message)


class CycleError(ResolutionError):
    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Dependency cycle detected: {' -> '.join(cycle)}")


class InstallError(FormularyError):
    """A failure fatal to one formula's installation, but not to its siblings."""

    def __init__(
        self,
        message: str,
        formula: str | None = None,
        step: str | None = None,
        output_tail: str = "",
    ) -> None:
        self.message = message
        self.formula = formula
        self.step = step
        self.output_tail = output_tail
        super().__init__(message)

    def __str__(self) -> str:
        parts = []
        if self.formula:
            parts.append(f"[{self.formula}]")
        if self.step:
            parts.append(f"step '{self.step}':")
        parts.append(self.message)
        return " ".join(parts)


class ExecutionError(InstallError):
    def __init__(
        self,
        message: str,
        exit_code: int,
        command: list[str],
        output_tail: str = "",
        step: str | None = None,
        result: Any = None,
    ) -> None:
        self.exit_code = exit_code
        self.command = command
        self.result = result
        super().__init__(message, step=step, output_tail=output_tail)


class MissingToolError(InstallError):
    pass


class FetchError(InstallError):
    pass


class LockTimeoutError(InstallError):
    pass


class CancelledError(InstallError):
    pass


class DependencyFailedError(InstallError):
    pass


class NotInstalledError(FormularyError):
    pass


class ReceiptError(FormularyError):
    pass
