"""Provisioning helpers: self-signed TLS certificates and invite tokens."""

from __future__ import annotations

import argparse
import datetime
import ipaddress
import logging
import secrets
import sys
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

logger = logging.getLogger(__name__)

DEFAULT_CERT_DIR = Path.home() / ".roomrelay"
DEFAULT_VALIDITY_DAYS = 365


def generate_self_signed_cert(
    cert_path: Path,
    key_path: Path,
    hostname: str = "localhost",
    validity_days: int = DEFAULT_VALIDITY_DAYS,
) -> x509.Certificate:
    """Generate a self-signed server certificate and private key for wss://.

    Args:
        cert_path: Path where the PEM certificate will be saved
        key_path: Path where the PEM private key will be saved (mode 0600)
        hostname: Hostname for the subject and SAN (localhost and 127.0.0.1 are always added)
        validity_days: Number of days the certificate is valid

    Returns:
        The generated certificate

    Raises:
        ValueError: If validity_days is not positive
        OSError: If the files cannot be written
    """
    if validity_days <= 0:
        raise ValueError("validity_days must be positive")

    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name(
        [
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "roomrelay"),
            x509.NameAttribute(NameOID.COMMON_NAME, hostname),
        ]
    )

    alt_names: list[x509.GeneralName] = [x509.DNSName("localhost")]
    if hostname != "localhost":
        alt_names.insert(0, x509.DNSName(hostname))
    alt_names.append(x509.IPAddress(ipaddress.ip_address("127.0.0.1")))

    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=validity_days))
        .add_extension(x509.SubjectAlternativeName(alt_names), critical=False)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
        .sign(private_key, hashes.SHA256())
    )

    cert_path.parent.mkdir(parents=True, exist_ok=True)
    key_path.parent.mkdir(parents=True, exist_ok=True)

    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(
        private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    key_path.chmod(0o600)

    logger.info("Generated self-signed certificate at %s", cert_path)
    logger.info("Generated private key at %s", key_path)
    return cert


def generate_invite_tokens(count: int = 1) -> list[str]:
    """Generate URL-safe random invite tokens.

    Raises:
        ValueError: If count is not positive
    """
    if count <= 0:
        raise ValueError("count must be positive")
    return [secrets.token_urlsafe(32) for _ in range(count)]


def main(argv: list[str] | None = None) -> int:
    """Command line entry point for ``roomrelay-gencert``."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    parser = argparse.ArgumentParser(
        description="Generate a self-signed TLS certificate or invite tokens for roomrelay"
    )
    parser.add_argument(
        "--cert",
        type=Path,
        default=DEFAULT_CERT_DIR / "cert.pem",
        help="Path to save certificate (default: ~/.roomrelay/cert.pem)",
    )
    parser.add_argument(
        "--key",
        type=Path,
        default=DEFAULT_CERT_DIR / "key.pem",
        help="Path to save private key (default: ~/.roomrelay/key.pem)",
    )
    parser.add_argument("--hostname", default="localhost", help="Certificate hostname")
    parser.add_argument(
        "--days",
        type=int,
        default=DEFAULT_VALIDITY_DAYS,
        help=f"Certificate validity in days (default: {DEFAULT_VALIDITY_DAYS})",
    )
    parser.add_argument(
        "--tokens",
        type=int,
        metavar="N",
        help="Print N invite tokens instead of generating a certificate",
    )
    args = parser.parse_args(argv)

    if args.tokens is not None:
        try:
            tokens = generate_invite_tokens(args.tokens)
        except ValueError as e:
            parser.error(str(e))
        print(f"INVITE_TOKENS={','.join(tokens)}")
        return 0

    try:
        generate_self_signed_cert(args.cert, args.key, args.hostname, args.days)
    except (OSError, ValueError) as e:
        logger.error("Failed to generate certificate: %s", e)
        return 1

    print(f"RELAY_TLS_CERT={args.cert}")
    print(f"RELAY_TLS_KEY={args.key}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
