"""
identity.py — the server's TLS identity (certificate chain + private key).

Why this exists:
- Keep all certificate/key handling in one place so the server only ever sees
  a ready-made `ssl.SSLContext`.
- The identity ships as a password-protected PKCS#12 bundle (.p12/.pfx), the
  same format browsers and most tooling export.
- Loading happens once at startup. A wrong password or a corrupt bundle is a
  startup failure, never a per-connection one.

Notes:
- `ssl.SSLContext.load_cert_chain` only reads from disk, so the decoded PEM is
  written to a private temporary directory for the duration of that call.
- `generate_identity()` builds a throwaway self-signed bundle for local
  testing; it is not meant for production certificates.
"""

import datetime
import ipaddress
import os
import ssl
import tempfile
from typing import Optional, Sequence

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID


class IdentityError(ValueError):
    """The credential bundle could not be turned into a usable server identity."""


# -----------------------------
# Loading
# -----------------------------

class ServerIdentity:
    """
    Immutable server identity: private key, leaf certificate and any chain
    certificates that came with it.

    Build one with `ServerIdentity.from_pkcs12()`; the rest of the code only
    needs `ssl_context()`.
    """

    def __init__(
        self,
        private_key,
        certificate: x509.Certificate,
        chain: Sequence[x509.Certificate] = (),
    ) -> None:
        self._private_key = private_key
        self._certificate = certificate
        self._chain = tuple(chain)

    @classmethod
    def from_pkcs12(cls, data: bytes, password: str) -> "ServerIdentity":
        """
        Decode a PKCS#12 bundle.

        Raises:
            IdentityError: wrong password, corrupt data, or a bundle that is
            missing either the private key or the certificate.
        """
        try:
            key, cert, chain = pkcs12.load_key_and_certificates(
                data, password.encode("utf-8")
            )
        except ValueError as exc:
            raise IdentityError(f"Could not open identity bundle: {exc}") from exc

        if key is None:
            raise IdentityError("Identity bundle has no private key")
        if cert is None:
            raise IdentityError("Identity bundle has no certificate")
        return cls(key, cert, chain or ())

    @property
    def certificate(self) -> x509.Certificate:
        return self._certificate

    @property
    def chain(self) -> Sequence[x509.Certificate]:
        return self._chain

    def subject(self) -> str:
        """Human-readable subject, handy for the startup log line."""
        return self._certificate.subject.rfc4514_string()

    def certificate_pem(self) -> bytes:
        """Leaf certificate followed by the chain, PEM encoded."""
        certs = (self._certificate,) + self._chain
        return b"".join(c.public_bytes(serialization.Encoding.PEM) for c in certs)

    def private_key_pem(self) -> bytes:
        """
        Export the private key in PKCS#8 (unencrypted) form.
        Only ever written to a private temp file; never persisted.
        """
        return self._private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def ssl_context(self) -> ssl.SSLContext:
        """
        Build a server-side TLS context presenting this identity.

        Client certificates are not requested (CERT_NONE is the server default).
        """
        ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ctx.minimum_version = ssl.TLSVersion.TLSv1_2

        with tempfile.TemporaryDirectory(prefix="wssrelay-") as tmp:
            path = os.path.join(tmp, "identity.pem")
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "wb") as f:
                f.write(self.certificate_pem())
                f.write(self.private_key_pem())
            try:
                ctx.load_cert_chain(path)
            except ssl.SSLError as exc:
                raise IdentityError(f"TLS library rejected identity: {exc}") from exc
        return ctx

    def __repr__(self) -> str:
        return f"ServerIdentity({self.subject()!r})"


def load_identity(path: str, password: str) -> ServerIdentity:
    """Read a PKCS#12 file from disk and decode it."""
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError as exc:
        raise IdentityError(f"Could not read identity file {path}: {exc}") from exc
    return ServerIdentity.from_pkcs12(data, password)


# -----------------------------
# Self-signed bundles (dev/test)
# -----------------------------

def generate_identity(
    common_name: str = "localhost",
    password: str = "",
    days: int = 365,
    key_size: int = 4096,
    friendly_name: Optional[bytes] = b"wssrelay",
) -> bytes:
    """
    Generate an RSA key and a self-signed certificate for `common_name` and
    return them as a PKCS#12 bundle encrypted with `password`.

    The certificate also lists 127.0.0.1 / ::1 when the name is "localhost",
    so local clients that verify hostnames are happy.
    """
    key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])

    alt_names = [x509.DNSName(common_name)]
    if common_name == "localhost":
        alt_names.append(x509.IPAddress(ipaddress.ip_address("127.0.0.1")))
        alt_names.append(x509.IPAddress(ipaddress.ip_address("::1")))

    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        # Backdate a little so clocks that are slightly off still accept it.
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + datetime.timedelta(days=days))
        .add_extension(x509.SubjectAlternativeName(alt_names), critical=False)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )

    if password:
        encryption = serialization.BestAvailableEncryption(password.encode("utf-8"))
    else:
        encryption = serialization.NoEncryption()
    return pkcs12.serialize_key_and_certificates(friendly_name, key, cert, None, encryption)
