from typing import Any, Optional

from pydantic import BaseModel, EmailStr, Field


class AuthUser(BaseModel):
    """
    Represents an authenticated marketplace user from a Supabase token.

    Vendor or buyer identity is resolved per request against the records
    being acted on; the token only proves who the caller is.
    """

    user_id: str = Field(..., alias="sub")
    email: Optional[EmailStr] = None
    role: str = "authenticated"
    app_metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"populate_by_name": True}
