from dataclasses import dataclass
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class ServiceResult:
    """Outcome of a billing service call. Services return it instead of raising."""
    success: bool
    data: Optional[Dict[str, Any]] = None
    errors: Optional[List[str]] = None

    @classmethod
    def ok(cls, data: Dict[str, Any]) -> "ServiceResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, errors: List[str] | str) -> "ServiceResult":
        if isinstance(errors, str):
            errors = [errors]
        return cls(success=False, errors=list(errors))

    @property
    def failure(self) -> bool:
        return not self.success

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "data": self.data, "errors": self.errors}
