from pydantic import BaseModel
from typing import Optional


class MessageResponse(BaseModel):
    message: Optional[str] = None
    error: Optional[str] = None


class ScanResponse(MessageResponse):
    infected: bool


class MetricsResponse(BaseModel):
    written_bytes_total: int
    read_bytes_total: int
