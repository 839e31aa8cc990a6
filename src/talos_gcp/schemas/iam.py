from typing import ClassVar

from pydantic import BaseModel, Field

from .base import ResourceKind, ResourceSpec


class ServiceAccountSpec(ResourceSpec):
    """A service account plus the project roles bound to it."""

    kind: ClassVar[ResourceKind] = ResourceKind.SERVICE_ACCOUNT
    MUTABLE_FIELDS = ("display_name", "roles")

    project_id: str
    display_name: str = ""
    roles: list[str] = Field(default_factory=list)

    @property
    def email(self) -> str:
        return f"{self.name}@{self.project_id}.iam.gserviceaccount.com"


class PolicyBinding(BaseModel):
    role: str
    members: list[str] = Field(default_factory=list)

    @property
    def users(self) -> list[str]:
        return [m.split(":", 1)[1] for m in self.members if m.startswith("user:")]

    @property
    def categorized_members(self) -> dict[str, list[str]]:
        categories: dict[str, list[str]] = {}
        for member in self.members:
            prefix, _, ident = member.partition(":")
            categories.setdefault(prefix or "other", []).append(ident or member)
        return categories
