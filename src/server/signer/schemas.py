"""
签发服务的数据模型定义。
"""

import ipaddress
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

SecretKind = Literal["cert", "key"]


class SigningRequest(BaseModel):
    """
    传入签发核心的请求。上游已完成校验，核心内部仍会再次清洗 ip / dns。
    """
    model_config = ConfigDict(frozen=True)

    device_id: str
    ip: str
    dns: str | None = None
    days: int


class SubjectAltNames(BaseModel):
    """清洗后的 SAN 集合：IP 必有，DNS 可选。"""
    model_config = ConfigDict(frozen=True)

    ip: str
    dns: str | None = None


class SigningResult(BaseModel):
    """签发结果：设备私钥与 叶子证书 + 中间证书 组成的证书链。"""
    device_key_pem: str
    chain_pem: str


class IntermediateCA(BaseModel):
    """
    进程启动时加载并规范化的中间 CA 证书与私钥。
    启动后只读，可在并发请求间无锁共享；仅随进程重启而重新加载。
    """
    model_config = ConfigDict(frozen=True)

    cert_pem: bytes
    key_pem: bytes
    subject: str


class SignRequest(BaseModel):
    """
    客户端请求签发设备证书时的数据模型。
    """
    device_id: str = Field(min_length=3, max_length=64)
    ip: str
    dns: str | None = Field(default=None, min_length=1, max_length=253)
    days: int | None = Field(default=None, ge=1, le=365)

    @field_validator("ip")
    @classmethod
    def ip_must_be_ipv4(cls, value: str) -> str:
        try:
            ipaddress.IPv4Address(value)
        except ValueError:
            raise ValueError("ip must be IPv4")
        return value


class SignResponse(BaseModel):
    """
    服务端返回的设备私钥与证书链。
    """
    device_key_pem: str
    server_crt_pem: str  # 叶子证书在前，中间证书在后


class HealthResponse(BaseModel):
    ok: bool = True
    service: str | None = None
