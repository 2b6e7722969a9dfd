from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    EDITOR = "editor"
    ADMIN = "admin"


ROLE_SCOPES: dict[str, set[str]] = {
    Role.EDITOR.value: {"content:edit"},
    Role.ADMIN.value: {"content:edit", "sync:admin"},
}


@dataclass(slots=True)
class Principal:
    subject: str
    role: str
    scopes: set[str]

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")


def scopes_for_role(role: str) -> set[str]:
    return set(ROLE_SCOPES.get(role, set()))
