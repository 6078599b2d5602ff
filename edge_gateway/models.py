from pydantic import BaseModel, ConfigDict
from typing import Dict, List, Optional


class ErrorDetail(BaseModel):
    model_config = ConfigDict(extra="allow")

    message: str
    type: str
    code: str


class ErrorResponse(BaseModel):
    error: ErrorDetail


class LandingResponse(BaseModel):
    message: str
    mappings: Dict[str, str]


class MappingsResponse(BaseModel):
    mappings: Dict[str, str]


class InspectedRequest(BaseModel):
    method: str
    path: str
    normalized_path: str
    query: Dict[str, str]
    content_type: str
    content_length_header: str
    body_bytes: int
    body_sha256: str


class InspectedRouting(BaseModel):
    mode: Optional[str] = None
    upstream_url: Optional[str] = None
    upstream_host: Optional[str] = None
    forward_path: Optional[str] = None
    forward_query: Optional[str] = None
    target_url: Optional[str] = None
    route_key: Optional[str] = None
    passthrough: Optional[bool] = None
    fingerprint: Optional[str] = None
    error: Optional[ErrorDetail] = None


class InspectedHeaders(BaseModel):
    received: Dict[str, str]
    would_forward: Dict[str, str]
    removed_by_cleaning: List[str]


class InspectionReport(BaseModel):
    message: str
    timestamp: str
    request: InspectedRequest
    routing: InspectedRouting
    headers: InspectedHeaders
