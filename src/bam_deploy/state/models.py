"""Models for the JSON files under ``.bam/``.

Field names are snake_case in Python; the camelCase aliases are what gets
written to disk, so files stay compatible with earlier releases of the tool.
"""

from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _StateModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_json_dict(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class ProjectConfig(_StateModel):
    """Per-project settings stored in ``config.json``."""

    account_number: str = Field("", alias="accountNumber")
    region: str = ""
    role: str = ""

    @field_validator("account_number", mode="before")
    @classmethod
    def coerce_account_number(cls, v):
        """Account ids are sometimes written as bare JSON numbers."""
        return "" if v is None else str(v)

    def is_configured(self) -> bool:
        return bool(self.account_number and self.region and self.role)

    @property
    def role_arn(self) -> str:
        return f"arn:aws:iam::{self.account_number}:role/{self.role}"


class MethodPermissionIds(_StateModel):
    """Statement ids of the invoke grants for one HTTP method."""

    root_permission_id: str = Field(..., alias="rootPermissionId")
    greedy_permission_id: str = Field(..., alias="greedyPermissionId")


class ApiRecord(_StateModel):
    """A deployed REST API fronting one function."""

    rest_api_id: str = Field(..., alias="restApiId")
    endpoint: str = ""
    method_permission_ids: Dict[str, MethodPermissionIds] = Field(
        default_factory=dict, alias="methodPermissionIds"
    )

    @property
    def methods(self) -> list:
        return list(self.method_permission_ids)


class FunctionRecord(_StateModel):
    """A deployed function as recorded in ``functions/library.json``."""

    arn: str
    description: str = ""
    api: Optional[ApiRecord] = None
