"""Self-signed TLS material for the agent's HTTPS listener.

The agent only serves TLS. On first start it generates an RSA key and a
self-signed certificate covering localhost and the host's own address; later
starts reuse the files.
"""

from __future__ import annotations

import ipaddress
import logging
import os
import socket
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

logger = logging.getLogger(__name__)

KEY_SIZE = 2048
VALID_DAYS = 3650


def host_ip_addresses() -> list[str]:
    """Loopback plus the address the host name resolves to, when it resolves."""
    addresses = ["127.0.0.1"]
    try:
        host_ip = socket.gethostbyname(socket.gethostname())
    except OSError:
        logger.warning("tls event=host_ip_unresolved")
        return addresses
    if host_ip not in addresses:
        addresses.append(host_ip)
    return addresses


def generate_self_signed(
    common_name: str, ip_addresses: Iterable[str]
) -> tuple[bytes, bytes]:
    """Return (certificate_pem, private_key_pem)."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(tz=UTC)
    sans: list[x509.GeneralName] = [x509.DNSName(common_name)]
    sans.extend(x509.IPAddress(ipaddress.ip_address(ip)) for ip in ip_addresses)

    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=VALID_DAYS))
        .add_extension(x509.SubjectAlternativeName(sans), critical=False)
        .sign(key, hashes.SHA256())
    )
    cert_pem = certificate.public_bytes(serialization.Encoding.PEM)
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return cert_pem, key_pem


def ensure_tls_material(
    cert_path: Path,
    key_path: Path,
    *,
    common_name: str = "localhost",
    ip_addresses: Iterable[str] | None = None,
) -> bool:
    """Create the certificate and key unless both already exist.

    Returns True when new material was written.
    """
    if cert_path.exists() and key_path.exists():
        return False

    addresses = list(ip_addresses) if ip_addresses is not None else host_ip_addresses()
    logger.info(
        "tls event=generate cert=%s key=%s sans=%s", cert_path, key_path, ",".join(addresses)
    )
    cert_pem, key_pem = generate_self_signed(common_name, addresses)

    cert_path.parent.mkdir(parents=True, exist_ok=True)
    key_path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as handle:
        handle.write(key_pem)
    cert_path.write_bytes(cert_pem)
    return True
