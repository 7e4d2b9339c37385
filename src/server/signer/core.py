"""
设备证书签发的核心流程。

包括加载中间 CA、清洗 SAN 字段、生成设备私钥与 CSR、调用 CA 后端签发叶子证书
并组装证书链。每次签发都在独立的临时工作区内完成，结束时无条件清理。
"""

import re

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from loguru import logger

from .errors import SignerError, SigningError, ValidationError
from .normalizer import normalize
from .operations import DEFAULT_CURVE, get_operations
from .schemas import IntermediateCA, SigningRequest, SigningResult, SubjectAltNames
from .workspace import workspace, write_secret

DEFAULT_BACKEND = "cryptography"

_IP_UNSAFE_RE = re.compile(r"[^\d.]")
_DNS_UNSAFE_RE = re.compile(r"[^a-zA-Z0-9.-]")


def sanitize_ip(ip: str) -> str:
    """仅保留数字与点，防止注入扩展配置。"""
    return _IP_UNSAFE_RE.sub("", ip or "")


def sanitize_dns(dns: str | None) -> str | None:
    """仅保留字母、数字、点与连字符；清洗后为空则返回 None。"""
    if not dns:
        return None
    safe = _DNS_UNSAFE_RE.sub("", dns)
    return safe or None


def build_subject_alt_names(ip: str, dns: str | None) -> SubjectAltNames:
    return SubjectAltNames(ip=sanitize_ip(ip), dns=sanitize_dns(dns))


def assemble_chain(leaf_pem: str, intermediate_pem: str) -> str:
    """叶子证书在前，中间证书在后；中间证书缺少结尾换行时补齐。"""
    if not intermediate_pem.endswith("\n"):
        intermediate_pem += "\n"
    return leaf_pem + intermediate_pem


def _key_matches_certificate(cert_pem: bytes, key_pem: bytes) -> bool:
    cert = x509.load_pem_x509_certificate(cert_pem)
    key = serialization.load_pem_private_key(key_pem, password=None)
    spki = serialization.PublicFormat.SubjectPublicKeyInfo
    return cert.public_key().public_bytes(
        serialization.Encoding.DER, spki
    ) == key.public_key().public_bytes(serialization.Encoding.DER, spki)


def load_intermediate_ca(
    cert_raw: str, key_raw: str, backend: str = DEFAULT_BACKEND
) -> IntermediateCA:
    """
    规范化并校验中间 CA 证书与私钥，供进程启动时调用一次。
    :raises NormalizationError: 证书或私钥无法识别。
    :raises ValidationError: 私钥与证书公钥不匹配。
    """
    with workspace() as work:
        ops = get_operations(backend, work)
        cert_pem = normalize(cert_raw, "cert", ops)
        key_pem = normalize(key_raw, "key", ops)

    try:
        matches = _key_matches_certificate(cert_pem, key_pem)
    except (ValueError, TypeError) as e:
        raise ValidationError(f"中间 CA 校验失败: {e}") from e
    if not matches:
        raise ValidationError("中间 CA 私钥与证书公钥不匹配")

    subject = x509.load_pem_x509_certificate(cert_pem).subject.rfc4514_string()
    logger.info(f"已加载中间 CA: subject={subject}, backend={backend}")
    return IntermediateCA(cert_pem=cert_pem, key_pem=key_pem, subject=subject)


def sign_leaf(
    request: SigningRequest,
    intermediate_cert_raw: str,
    intermediate_key_raw: str,
    backend: str = DEFAULT_BACKEND,
) -> SigningResult:
    """
    为设备生成私钥并签发叶子证书。
    :param request: 设备 ID、IP、可选 DNS 与有效期天数。
    :param intermediate_cert_raw: 中间 CA 证书（任意受支持的编码）。
    :param intermediate_key_raw: 中间 CA 私钥（任意受支持的编码）。
    :param backend: CA 操作后端名称。
    :return: 设备私钥与证书链。
    :raises NormalizationError: 中间 CA 材料无法规范化，此时不会发起任何签名。
    :raises SigningError: 生成密钥、CSR 或签名失败。
    :raises WorkspaceError: 临时工作区创建或清理失败。
    """
    with workspace() as work:
        ops = get_operations(backend, work)

        int_cert_pem = normalize(intermediate_cert_raw, "cert", ops)
        int_key_pem = normalize(intermediate_key_raw, "key", ops)
        (work / "intermediate.crt").write_bytes(int_cert_pem)
        write_secret(work / "intermediate.key", int_key_pem)

        san = build_subject_alt_names(request.ip, request.dns)

        try:
            key_pem = ops.generate_key_pair(DEFAULT_CURVE)
            write_secret(work / "device.key", key_pem)

            csr_pem = ops.create_csr(key_pem, request.device_id)
            (work / "device.csr").write_bytes(csr_pem)

            leaf_pem = ops.sign_certificate(
                csr_pem, int_cert_pem, int_key_pem, request.days, san
            )
            (work / "server.crt").write_bytes(leaf_pem)
        except SignerError:
            raise
        except Exception as e:
            raise SigningError(f"证书签发失败: {e}") from e

        chain_pem = assemble_chain(leaf_pem.decode("ascii"), int_cert_pem.decode("ascii"))
        (work / "server_chain.crt").write_text(chain_pem, encoding="ascii")

        logger.info(
            f"已为设备签发证书: device_id={request.device_id}, ip={san.ip}, "
            f"dns={san.dns}, days={request.days}, backend={ops.name}"
        )
        return SigningResult(device_key_pem=key_pem.decode("ascii"), chain_pem=chain_pem)
