"""
CA 基础操作：生成密钥、构造 CSR、DER/PEM 转换、PEM 校验与签发叶子证书。

提供两种后端：
- CryptographyOperations：直接调用 cryptography 库（默认）。
- OpenSSLOperations：在工作区内调用 openssl 命令行。
两者对外约定一致，编排层不关心具体使用哪一种。
"""

from __future__ import annotations

import ipaddress
import secrets
import subprocess
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, List, Tuple

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed448, ed25519, rsa
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
)
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID
from loguru import logger

from .errors import ConversionError, SigningError, ValidationError
from .schemas import SecretKind, SubjectAltNames
from .workspace import write_secret

DEFAULT_CURVE = "prime256v1"

# DER 私钥转换的候选顺序：通用私钥 -> EC -> RSA
KEY_CANDIDATES: Tuple[str, ...] = ("pkey", "ec", "rsa")

_CURVES = {
    "prime256v1": ec.SECP256R1,
    "secp256r1": ec.SECP256R1,
    "P-256": ec.SECP256R1,
    "secp384r1": ec.SECP384R1,
    "P-384": ec.SECP384R1,
    "secp521r1": ec.SECP521R1,
    "P-521": ec.SECP521R1,
}


def render_extension_config(san: SubjectAltNames) -> str:
    """生成 openssl -extfile 使用的扩展配置文本（SAN 取值须已清洗）。"""
    alt = ["[alt_names]", f"IP.1={san.ip}"]
    if san.dns:
        alt.append(f"DNS.1={san.dns}")
    return "\n".join(
        [
            "basicConstraints=CA:FALSE",
            "keyUsage=digitalSignature,keyEncipherment",
            "extendedKeyUsage=serverAuth",
            "subjectKeyIdentifier=hash",
            "authorityKeyIdentifier=keyid",
            "subjectAltName=@alt_names",
            "\n".join(alt),
        ]
    ) + "\n"


class CAOperations:
    """CA 操作的公共约定。子类实现具体后端。"""

    name = "base"

    def generate_key_pair(self, curve: str = DEFAULT_CURVE) -> bytes:
        raise NotImplementedError

    def create_csr(self, private_key_pem: bytes, common_name: str) -> bytes:
        raise NotImplementedError

    def sign_certificate(
        self,
        csr_pem: bytes,
        ca_cert_pem: bytes,
        ca_key_pem: bytes,
        days: int,
        san: SubjectAltNames,
    ) -> bytes:
        raise NotImplementedError

    def validate(self, pem: bytes, kind: SecretKind) -> None:
        raise NotImplementedError

    def _convert_cert(self, der: bytes) -> bytes:
        raise NotImplementedError

    def _convert_key(self, der: bytes, candidate: str) -> bytes:
        raise NotImplementedError

    def convert_der_to_pem(self, der: bytes, kind: SecretKind) -> bytes:
        """
        将 DER 转换为 PEM。
        私钥依次按 KEY_CANDIDATES 尝试，返回第一个成功的结果；全部失败时汇总错误。
        :raises ConversionError: 转换失败。
        """
        if kind == "cert":
            try:
                return self._convert_cert(der)
            except ConversionError:
                raise
            except Exception as e:
                raise ConversionError(f"DER 证书转换失败: {e}") from e

        failures: List[str] = []
        for candidate in KEY_CANDIDATES:
            try:
                return self._convert_key(der, candidate)
            except Exception as e:
                failures.append(f"{candidate}: {e}")
        raise ConversionError("DER 私钥转换失败: " + "; ".join(failures))


def _load_private_key(pem: bytes, error_cls: type[Exception]):
    try:
        return serialization.load_pem_private_key(pem, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise error_cls(f"无法解析私钥: {e}") from e


class CryptographyOperations(CAOperations):
    """基于 cryptography 库的实现，不依赖外部进程。"""

    name = "cryptography"

    def __init__(self, workdir: Path | None = None):
        # 本后端不需要落盘，保留参数以与 OpenSSLOperations 保持同一构造方式
        self.workdir = workdir

    def generate_key_pair(self, curve: str = DEFAULT_CURVE) -> bytes:
        curve_cls = _CURVES.get(curve)
        if curve_cls is None:
            raise SigningError(f"不支持的椭圆曲线: {curve}")
        key = ec.generate_private_key(curve_cls())
        return key.private_bytes(
            encoding=Encoding.PEM,
            format=PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=NoEncryption(),
        )

    def create_csr(self, private_key_pem: bytes, common_name: str) -> bytes:
        key = _load_private_key(private_key_pem, SigningError)
        try:
            csr = (
                x509.CertificateSigningRequestBuilder()
                .subject_name(
                    x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
                )
                .sign(key, hashes.SHA256())
            )
        except (ValueError, TypeError) as e:
            raise SigningError(f"构造 CSR 失败: {e}") from e
        return csr.public_bytes(Encoding.PEM)

    def sign_certificate(
        self,
        csr_pem: bytes,
        ca_cert_pem: bytes,
        ca_key_pem: bytes,
        days: int,
        san: SubjectAltNames,
    ) -> bytes:
        try:
            csr = x509.load_pem_x509_csr(csr_pem)
            ca_cert = x509.load_pem_x509_certificate(ca_cert_pem)
        except ValueError as e:
            raise SigningError(f"无法解析 CSR 或 CA 证书: {e}") from e
        if not csr.is_signature_valid:
            raise SigningError("CSR 签名无效")
        ca_key = _load_private_key(ca_key_pem, SigningError)

        try:
            names: List[x509.GeneralName] = [
                x509.IPAddress(ipaddress.IPv4Address(san.ip))
            ]
            if san.dns:
                names.append(x509.DNSName(san.dns))
        except ValueError as e:
            raise SigningError(f"无效的 SAN: {e}") from e

        # 与 openssl 的 authorityKeyIdentifier=keyid 一致：优先沿用 CA 证书的 SKI
        try:
            ca_ski = ca_cert.extensions.get_extension_for_class(x509.SubjectKeyIdentifier).value
            aki = x509.AuthorityKeyIdentifier.from_issuer_subject_key_identifier(ca_ski)
        except x509.ExtensionNotFound:
            aki = x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key())

        now = datetime.now(timezone.utc)
        builder = (
            x509.CertificateBuilder()
            .subject_name(csr.subject)
            .issuer_name(ca_cert.subject)
            .public_key(csr.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + timedelta(days=days))
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=False)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    key_encipherment=True,
                    key_cert_sign=False,
                    crl_sign=False,
                    content_commitment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=False,
            )
            .add_extension(
                x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]),
                critical=False,
            )
            .add_extension(
                x509.SubjectKeyIdentifier.from_public_key(csr.public_key()), critical=False
            )
            .add_extension(aki, critical=False)
            .add_extension(x509.SubjectAlternativeName(names), critical=False)
        )

        # Ed25519/Ed448 签名不接受摘要算法
        algorithm = None
        if not isinstance(ca_key, (ed25519.Ed25519PrivateKey, ed448.Ed448PrivateKey)):
            algorithm = hashes.SHA256()
        try:
            cert = builder.sign(private_key=ca_key, algorithm=algorithm)
        except (ValueError, TypeError) as e:
            raise SigningError(f"CA 签名失败: {e}") from e
        logger.debug(f"已签发叶子证书 serial=0x{format(cert.serial_number, 'x')}")
        return cert.public_bytes(Encoding.PEM)

    def validate(self, pem: bytes, kind: SecretKind) -> None:
        if kind == "cert":
            try:
                cert = x509.load_pem_x509_certificate(pem)
                cert.subject.rfc4514_string()
            except ValueError as e:
                raise ValidationError(f"证书校验失败: {e}") from e
            return
        _load_private_key(pem, ValidationError)

    def _convert_cert(self, der: bytes) -> bytes:
        return x509.load_der_x509_certificate(der).public_bytes(Encoding.PEM)

    def _convert_key(self, der: bytes, candidate: str) -> bytes:
        key = serialization.load_der_private_key(der, password=None)
        if candidate == "pkey":
            fmt = PrivateFormat.PKCS8
        elif candidate == "ec":
            if not isinstance(key, ec.EllipticCurvePrivateKey):
                raise ValueError("不是 EC 私钥")
            fmt = PrivateFormat.TraditionalOpenSSL
        elif candidate == "rsa":
            if not isinstance(key, rsa.RSAPrivateKey):
                raise ValueError("不是 RSA 私钥")
            fmt = PrivateFormat.TraditionalOpenSSL
        else:
            raise ValueError(f"未知的转换方式: {candidate}")
        return key.private_bytes(Encoding.PEM, fmt, NoEncryption())


class OpenSSLOperations(CAOperations):
    """
    通过 openssl 命令行实现的后端。
    所有中间文件写入调用方提供的工作区，随工作区一并删除。
    """

    name = "openssl"

    def __init__(self, workdir: Path):
        self.workdir = Path(workdir)

    def _scratch(self, suffix: str) -> Path:
        return self.workdir / f"ossl-{secrets.token_hex(6)}{suffix}"

    def _run(self, args: List[str], error_cls: type[Exception]) -> None:
        cmd = ["openssl", *args]
        logger.debug(f"Executing command: openssl {args[0]}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except FileNotFoundError as e:
            raise error_cls("未找到 openssl 命令") from e
        if result.returncode != 0:
            raise error_cls(f"openssl {args[0]} 执行失败: {result.stderr.strip()}")

    def generate_key_pair(self, curve: str = DEFAULT_CURVE) -> bytes:
        out = self._scratch(".key")
        self._run(["ecparam", "-name", curve, "-genkey", "-noout", "-out", str(out)], SigningError)
        return out.read_bytes()

    def create_csr(self, private_key_pem: bytes, common_name: str) -> bytes:
        key_path = write_secret(self._scratch(".key"), private_key_pem)
        out = self._scratch(".csr")
        # -subj 中 / 与 + 具有特殊含义，需要转义
        escaped = (
            common_name.replace("\\", "\\\\").replace("/", "\\/").replace("+", "\\+")
        )
        self._run(
            [
                "req", "-new", "-utf8", "-key", str(key_path),
                "-subj", f"/CN={escaped}", "-out", str(out),
            ],
            SigningError,
        )
        return out.read_bytes()

    def sign_certificate(
        self,
        csr_pem: bytes,
        ca_cert_pem: bytes,
        ca_key_pem: bytes,
        days: int,
        san: SubjectAltNames,
    ) -> bytes:
        csr_path = self._scratch(".csr")
        csr_path.write_bytes(csr_pem)
        ca_cert_path = self._scratch(".crt")
        ca_cert_path.write_bytes(ca_cert_pem)
        ca_key_path = write_secret(self._scratch(".key"), ca_key_pem)
        ext_path = self._scratch(".cnf")
        ext_path.write_text(render_extension_config(san), encoding="utf-8")
        out = self._scratch(".crt")
        serial = f"0x{secrets.randbits(159):x}"
        self._run(
            [
                "x509", "-req", "-in", str(csr_path),
                "-CA", str(ca_cert_path), "-CAkey", str(ca_key_path),
                "-set_serial", serial,
                "-out", str(out), "-days", str(days), "-sha256",
                "-extfile", str(ext_path),
            ],
            SigningError,
        )
        return out.read_bytes()

    def validate(self, pem: bytes, kind: SecretKind) -> None:
        path = write_secret(self._scratch(".pem"), pem)
        if kind == "cert":
            self._run(["x509", "-in", str(path), "-noout", "-subject"], ValidationError)
        else:
            self._run(["pkey", "-in", str(path), "-noout"], ValidationError)

    def _convert_cert(self, der: bytes) -> bytes:
        der_path = self._scratch(".der")
        der_path.write_bytes(der)
        out = self._scratch(".pem")
        try:
            self._run(["x509", "-inform", "DER", "-in", str(der_path), "-out", str(out)], ConversionError)
        finally:
            der_path.unlink(missing_ok=True)
        return out.read_bytes()

    def _convert_key(self, der: bytes, candidate: str) -> bytes:
        der_path = write_secret(self._scratch(".der"), der)
        out = self._scratch(".pem")
        try:
            self._run([candidate, "-inform", "DER", "-in", str(der_path), "-out", str(out)], ConversionError)
        finally:
            der_path.unlink(missing_ok=True)
        return out.read_bytes()


BACKENDS: dict[str, Callable[..., CAOperations]] = {
    CryptographyOperations.name: CryptographyOperations,
    OpenSSLOperations.name: OpenSSLOperations,
}


def get_operations(backend: str, workdir: Path) -> CAOperations:
    """
    根据名称创建 CA 操作后端。
    :raises ValueError: 未知后端名称。
    """
    try:
        factory = BACKENDS[backend]
    except KeyError:
        raise ValueError(f"未知的 CA 后端: {backend}")
    return factory(workdir)
