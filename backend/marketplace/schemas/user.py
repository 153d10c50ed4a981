from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class Socials(BaseModel):
    discord: str | None = None
    whatsapp: str | None = None
    youtube: str | None = None


class ProfileUpdate(BaseModel):
    """Display fields an actor may change on their own record."""

    model_config = ConfigDict(extra="forbid")

    profilePic: str | None = None
    profileBorder: str | None = None
    customColor: str | None = None
    customBorderWidth: int | None = Field(default=None, ge=1, le=10)
    bio: str | None = Field(default=None, max_length=1000)
    socials: Socials | None = None


class AdminUserUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: Literal["owner", "admin", "staff", "user"] | None = None
    banned: bool | None = None
    muted: bool | None = None


class CredentialsIn(BaseModel):
    username: str
    password: str


class CategoryIn(BaseModel):
    name: str
