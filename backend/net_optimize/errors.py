from __future__ import annotations


class NetOptimizeError(Exception):
    """
    Base for every failure the tool reports.

    str() renders the same "code:detail" token that ends up in warnings and
    in the log, e.g. "sysctl_set_failed:net.core.rmem_max".
    """

    code = "error"
    fatal = True

    def __init__(self, code: str = "", detail: str = "") -> None:
        self.code = code or self.code
        self.detail = detail
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.detail:
            return f"{self.code}:{self.detail}"
        return self.code

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, NetOptimizeError):
            return NotImplemented
        return (type(self), self.code, self.detail) == (type(other), other.code, other.detail)

    def __hash__(self) -> int:
        return hash((type(self), self.code, self.detail))


class PrivilegeError(NetOptimizeError):
    code = "root_required"


class DetectionError(NetOptimizeError):
    code = "interface_not_found"


class UnsupportedFeature(NetOptimizeError):
    code = "feature_unsupported"
    fatal = False


class MutationFailure(NetOptimizeError):
    code = "mutation_failed"
    fatal = False

    def __init__(self, code: str = "", detail: str = "", *, fatal: bool = False) -> None:
        super().__init__(code, detail)
        self.fatal = fatal


class ValidationError(NetOptimizeError):
    code = "invalid_value"
    fatal = False


class PersistenceFailure(NetOptimizeError):
    code = "persist_failed"
