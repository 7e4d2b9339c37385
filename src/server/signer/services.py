"""
设备证书签发服务的业务逻辑层。
此模块负责 IP 策略检查与有效期选择，再调用核心流程完成签发。
"""

import ipaddress

from src.server.config import Config

from . import core
from .schemas import IntermediateCA, SignRequest, SignResponse, SigningRequest

MIN_DAYS = 1
MAX_DAYS = 365

# RFC 1918 私有网段与链路本地网段
_PRIVATE_NETWORKS = tuple(
    ipaddress.IPv4Network(net)
    for net in ("10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16", "169.254.0.0/16")
)


def is_private_ipv4(ip: str) -> bool:
    """私有地址或链路本地地址返回 True；非 IPv4 返回 False。"""
    try:
        addr = ipaddress.IPv4Address(ip)
    except ValueError:
        return False
    return any(addr in net for net in _PRIVATE_NETWORKS)


def clamp_days(days: int | None, default_days: int) -> int:
    """未指定时使用默认值，并限制在 [1, 365] 天内。"""
    value = default_days if days is None else days
    return min(max(value, MIN_DAYS), MAX_DAYS)


def sign_device_certificate_service(
    req: SignRequest, ca: IntermediateCA, settings: Config
) -> SignResponse:
    """
    处理设备证书签发的业务逻辑。
    :param req: 已通过模型校验的签发请求。
    :param ca: 启动时加载的中间 CA。
    :param settings: 当前配置。
    :return: 设备私钥与证书链。
    :raises ValueError: IP 不被允许。
    :raises SignerError: 规范化或签发失败。
    """
    if not settings.allow_private_ips and is_private_ipv4(req.ip):
        raise ValueError("ip_not_allowed")

    request = SigningRequest(
        device_id=req.device_id,
        ip=req.ip,
        dns=req.dns,
        days=clamp_days(req.days, settings.default_days),
    )
    result = core.sign_leaf(
        request,
        ca.cert_pem.decode("ascii"),
        ca.key_pem.decode("ascii"),
        backend=settings.ca_backend,
    )
    return SignResponse(device_key_pem=result.device_key_pem, server_crt_pem=result.chain_pem)
