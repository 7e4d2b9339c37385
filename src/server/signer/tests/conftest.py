"""
测试公用夹具：生成一次性的 EC 根 CA 与中间 CA。
"""

import shutil
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from src.server.signer.limiter import limiter


@dataclass
class CAMaterial:
    root_cert: x509.Certificate
    cert: x509.Certificate
    key: ec.EllipticCurvePrivateKey
    cert_pem: bytes
    key_pem: bytes  # PKCS8
    cert_der: bytes
    key_der: bytes  # PKCS8 DER


def _name(cn: str) -> x509.Name:
    return x509.Name(
        [
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "LAN IoT Test"),
            x509.NameAttribute(NameOID.COMMON_NAME, cn),
        ]
    )


def _ca_cert(subject_key, issuer_key, subject: x509.Name, issuer: x509.Name) -> x509.Certificate:
    now = datetime.now(timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(subject_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=1))
        .not_valid_after(now + timedelta(days=365))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                key_encipherment=False,
                key_cert_sign=True,
                crl_sign=True,
                content_commitment=False,
                data_encipherment=False,
                key_agreement=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.SubjectKeyIdentifier.from_public_key(subject_key.public_key()), critical=False
        )
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer_key.public_key()),
            critical=False,
        )
        .sign(private_key=issuer_key, algorithm=hashes.SHA256())
    )


@pytest.fixture(scope="session")
def ca_material() -> CAMaterial:
    """根 CA -> 中间 CA，均为 P-256。"""
    root_key = ec.generate_private_key(ec.SECP256R1())
    root_name = _name("Test Root CA")
    root_cert = _ca_cert(root_key, root_key, root_name, root_name)

    int_key = ec.generate_private_key(ec.SECP256R1())
    int_cert = _ca_cert(int_key, root_key, _name("Test Intermediate CA"), root_name)

    return CAMaterial(
        root_cert=root_cert,
        cert=int_cert,
        key=int_key,
        cert_pem=int_cert.public_bytes(serialization.Encoding.PEM),
        key_pem=int_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ),
        cert_der=int_cert.public_bytes(serialization.Encoding.DER),
        key_der=int_key.private_bytes(
            serialization.Encoding.DER,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ),
    )


@pytest.fixture
def requires_openssl():
    if shutil.which("openssl") is None:
        pytest.skip("openssl 命令不可用")


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    limiter.reset()
    yield
    limiter.reset()
