from __future__ import annotations


class RomError(Exception):
    pass


class InputError(RomError, ValueError):
    pass


class MissingMatrix(RomError, LookupError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Archive has no matrix file {name!r}")
        self.name = name


class IncompleteArchive(RomError, LookupError):
    def __init__(self, missing: list[str]) -> None:
        super().__init__(f"Archive is missing mandatory files: {', '.join(missing)}")
        self.missing = list(missing)


class ParseError(RomError, ValueError):
    def __init__(self, name: str, row: int, col: int, detail: str = "") -> None:
        msg = f"{name}: cannot parse value at row {row}, col {col}"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)
        self.name = name
        self.row = row
        self.col = col


class AssemblyError(RomError, RuntimeError):
    pass


class ModelNotReady(RomError, RuntimeError):
    pass


class InvalidFieldData(RomError, ValueError):
    pass


class UnsupportedOperation(RomError, ValueError):
    pass


class InvalidComponent(RomError, ValueError):
    pass


class MissingParameter(RomError, ValueError):
    def __init__(self, kind: str, parameter: str) -> None:
        super().__init__(f"Component {kind!r} requires parameter {parameter!r}")
        self.kind = kind
        self.parameter = parameter


class OutOfDomain(RomError, ValueError):
    pass


class FieldNotFound(RomError, LookupError):
    def __init__(self, field: str, available: list[str] | None = None) -> None:
        msg = f"Field {field!r} not found"
        if available is not None:
            msg += f". Available: {sorted(available)}"
        super().__init__(msg)
        self.field = field
