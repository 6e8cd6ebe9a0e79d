from typing import Dict, List, Optional

from pydantic import BaseModel


class ErrorDetail(BaseModel):
    error: str
    message: str
    url: Optional[str] = None


class EncodeResult(BaseModel):
    action: str = "encode"
    original: str
    encoded: str
    proxy_urls: Dict[str, str]


class DecodeResult(BaseModel):
    action: str = "decode"
    encoded: str
    decoded: str


class CodecInfo(BaseModel):
    endpoint: str
    usage: str
    example: str


class StatusResponse(BaseModel):
    timestamp: str
    service: str
    status: str
    version: str
    proxy_methods: Dict[str, CodecInfo]
    utilities: Dict[str, str]
    features: List[str]
