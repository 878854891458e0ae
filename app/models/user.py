from datetime import datetime

from beanie import Document, Indexed
from pydantic import Field


class User(Document):
    """Verified identity; created by the auth collaborator."""
    email: Indexed(str, unique=True)
    full_name: str = ""
    role: str = "user"  # "user" | "admin"
    stripe_customer_id: str | None = None
    session_version: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "users"
