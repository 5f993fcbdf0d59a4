"""Two-factor configuration records.

A user's two-factor configuration is stored as a single JSON document. Each
enabled method appears exactly once, and ``default_method`` always names one of
them. A configuration with no methods does not exist: removing the last method
deletes the whole document.
"""

from typing import Annotated, List, Literal, Union

from pydantic import BaseModel, Field, model_validator

CONFIG_VERSION = 2

MethodType = Literal["totp", "email", "passkey"]

METHOD_TYPES = ("totp", "email", "passkey")


class TotpMethodConfig(BaseModel):
    type: Literal["totp"] = "totp"
    secret: str
    enabled_at: int


class EmailMethodConfig(BaseModel):
    type: Literal["email"] = "email"
    address: str
    enabled_at: int


class PasskeyMethodConfig(BaseModel):
    """Passkey credential material is kept alongside, keyed by the user's DID."""

    type: Literal["passkey"] = "passkey"
    enabled_at: int


MethodConfig = Annotated[
    Union[TotpMethodConfig, EmailMethodConfig, PasskeyMethodConfig],
    Field(discriminator="type"),
]


class TwoFactorConfig(BaseModel):
    version: int = CONFIG_VERSION
    default_method: MethodType
    methods: List[MethodConfig]

    @model_validator(mode="after")
    def check_methods(self) -> "TwoFactorConfig":
        if not self.methods:
            raise ValueError("a two-factor configuration needs at least one method")

        types = [method.type for method in self.methods]
        if len(types) != len(set(types)):
            raise ValueError("two-factor methods must be unique by type")

        if self.default_method not in types:
            raise ValueError("default_method must be one of the enabled methods")

        return self
