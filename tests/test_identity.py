import ssl

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from wssrelay.identity import IdentityError, ServerIdentity, load_identity

from .conftest import IDENTITY_PASSWORD


def test_from_pkcs12_loads_key_and_certificate(identity):
    cn = identity.certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value
    assert cn == "localhost"
    assert identity.subject() == "CN=localhost"
    assert identity.chain == ()
    assert b"BEGIN PRIVATE KEY" in identity.private_key_pem()
    assert identity.certificate_pem().startswith(b"-----BEGIN CERTIFICATE-----")


def test_generated_certificate_covers_loopback(identity):
    san = identity.certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    assert "localhost" in san.get_values_for_type(x509.DNSName)
    assert "127.0.0.1" in [str(ip) for ip in san.get_values_for_type(x509.IPAddress)]


def test_wrong_password_is_rejected(identity_bundle):
    with pytest.raises(IdentityError):
        ServerIdentity.from_pkcs12(identity_bundle, "not the password")


def test_garbage_bundle_is_rejected():
    with pytest.raises(IdentityError):
        ServerIdentity.from_pkcs12(b"definitely not pkcs12", IDENTITY_PASSWORD)


def test_bundle_without_private_key_is_rejected(identity):
    # Certificate-only bundle (the cert travels as an "additional" cert).
    bundle = pkcs12.serialize_key_and_certificates(
        None,
        None,
        None,
        [identity.certificate],
        serialization.BestAvailableEncryption(IDENTITY_PASSWORD.encode()),
    )
    with pytest.raises(IdentityError, match="no private key"):
        ServerIdentity.from_pkcs12(bundle, IDENTITY_PASSWORD)


def test_ssl_context_is_server_side(identity):
    ctx = identity.ssl_context()
    assert isinstance(ctx, ssl.SSLContext)
    assert ctx.protocol == ssl.PROTOCOL_TLS_SERVER
    assert ctx.minimum_version == ssl.TLSVersion.TLSv1_2


def test_load_identity_from_file(identity_file, identity):
    loaded = load_identity(identity_file, IDENTITY_PASSWORD)
    assert loaded.certificate == identity.certificate


def test_load_identity_missing_file(tmp_path):
    with pytest.raises(IdentityError, match="Could not read"):
        load_identity(str(tmp_path / "nope.p12"), IDENTITY_PASSWORD)
