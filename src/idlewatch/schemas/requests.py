from typing import Optional
from pydantic import BaseModel


class ResolveInteractionRequest(BaseModel):
    resolution: Optional[str] = None


class WarnInteractionRequest(BaseModel):
    message: Optional[str] = None


class ActionResponse(BaseModel):
    success: bool
