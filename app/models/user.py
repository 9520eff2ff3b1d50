from pydantic import BaseModel


class CurrentUser(BaseModel):
    """Caller identity taken from the access token."""
    id: str
    company_id: str
