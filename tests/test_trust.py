"""
Tests de la política de confianza ICP-Brasil
"""
from datetime import datetime, timedelta, timezone

import pytest
from cryptography.x509.oid import ExtendedKeyUsageOID

from nfe_dsig.certificate import has_digital_signature_usage
from nfe_dsig.exceptions import CertificateInvalidError, TrustError, ValidationError
from nfe_dsig.trust import (
    CERT_TYPE_A1,
    CERT_TYPE_A3,
    ICP_BRASIL,
    TrustAnchor,
    TrustValidator,
    certificate_type,
    extract_cnpj,
    extract_cpf,
    validate_for_nfe_use,
)

ICP_OID_A3 = "2.16.76.1.2.2.3"


@pytest.fixture
def neutral_name(name_factory):
    """Nombre sin ningún patrón de la PKI nacional"""
    return name_factory("Example Signer", org="Example Org", country="US")


def test_leaf_issued_by_national_ca_is_trusted(signer_cert):
    validator = TrustValidator()
    assert validator.matches_anchor(signer_cert)
    assert validator.is_trusted(signer_cert)


def test_policy_oid_alone_is_enough(signer_key, cert_factory, neutral_name):
    cert = cert_factory(signer_key, neutral_name)
    assert TrustValidator().is_trusted(cert)


def test_name_pattern_alone_is_enough(signer_key, cert_factory, name_factory):
    cert = cert_factory(signer_key, name_factory("EMPRESA SEM POLITICA"), policies=())
    assert TrustValidator().is_trusted(cert)


def test_neither_pattern_nor_policy_is_untrusted(signer_key, cert_factory, neutral_name):
    cert = cert_factory(signer_key, neutral_name, policies=())
    validator = TrustValidator()
    assert validator.matches_anchor(cert) is False
    assert validator.is_trusted(cert) is False
    with pytest.raises(TrustError, match="no pertenece a la ICP-Brasil"):
        validator.validate_chain([cert])


def test_custom_anchor(signer_key, cert_factory, neutral_name):
    cert = cert_factory(signer_key, neutral_name, policies=())
    anchor = TrustAnchor(root_patterns=("Example Org",), ca_patterns=(), policy_oid_prefixes=())
    assert TrustValidator(anchor).is_trusted(cert)
    assert ICP_BRASIL.policy_oid_prefixes == ("2.16.76.1",)


def test_ca_certificate_cannot_be_leaf(signer_key, cert_factory, name_factory):
    cert = cert_factory(signer_key, name_factory("EMPRESA CA"), is_ca=True)
    with pytest.raises(TrustError) as exc_info:
        TrustValidator().check_leaf(cert)
    assert exc_info.value.field == "basicConstraints"


def test_leaf_requires_extended_key_usage(signer_key, cert_factory, name_factory):
    cert = cert_factory(signer_key, name_factory("EMPRESA SEM EKU"), ekus=())
    with pytest.raises(TrustError, match="extended key usage"):
        TrustValidator().check_leaf(cert)


def test_email_protection_alone_is_accepted_for_leaf(signer_key, cert_factory, name_factory):
    cert = cert_factory(
        signer_key, name_factory("EMPRESA EMAIL"), ekus=(ExtendedKeyUsageOID.EMAIL_PROTECTION,)
    )
    TrustValidator().check_leaf(cert)


def test_leaf_requires_digital_signature(signer_key, cert_factory, name_factory):
    cert = cert_factory(signer_key, name_factory("EMPRESA SEM DS"), digital_signature=False)
    with pytest.raises(TrustError, match="digitalSignature"):
        TrustValidator().check_leaf(cert)


def test_missing_key_usage_extension_rejected(signer_key, cert_factory, name_factory):
    cert = cert_factory(signer_key, name_factory("EMPRESA SEM KU"), key_usage=False)
    assert has_digital_signature_usage(cert) is False
    with pytest.raises(TrustError, match="digitalSignature"):
        TrustValidator().check_leaf(cert)


def test_valid_chain(signer_cert, ca_cert):
    TrustValidator().validate_chain([signer_cert, ca_cert])
    assert TrustValidator().is_trusted(signer_cert, [ca_cert])


def test_chain_in_wrong_order(signer_cert, ca_cert):
    with pytest.raises(TrustError, match="no está firmado por"):
        TrustValidator().validate_chain([ca_cert, signer_cert])


def test_chain_issued_by_other_key(signer_cert, other_key, cert_factory, ca_name):
    impostor = cert_factory(other_key, ca_name, is_ca=True, ekus=(), policies=())
    with pytest.raises(TrustError, match="no está firmado por"):
        TrustValidator().validate_chain([signer_cert, impostor])


def test_expired_intermediate(signer_cert, ca_key, ca_name, cert_factory):
    now = datetime.now(timezone.utc)
    expired_ca = cert_factory(
        ca_key,
        ca_name,
        is_ca=True,
        ekus=(),
        policies=(),
        not_before=now - timedelta(days=400),
        not_after=now - timedelta(days=1),
    )
    with pytest.raises(TrustError) as exc_info:
        TrustValidator().validate_chain([signer_cert, expired_ca])
    assert "Certificado 1" in str(exc_info.value)


def test_empty_chain():
    with pytest.raises(ValidationError):
        TrustValidator().validate_chain([])


def test_injected_clock(signer_cert):
    future = datetime.now(timezone.utc) + timedelta(days=800)
    validator = TrustValidator(clock=lambda: future)
    with pytest.raises(TrustError, match="expirado"):
        validator.validate_chain([signer_cert])


def test_certificate_type(signer_key, signer_cert, cert_factory, name_factory):
    assert certificate_type(signer_cert) == CERT_TYPE_A1
    a3 = cert_factory(signer_key, name_factory("EMPRESA TOKEN"), policies=(ICP_OID_A3,))
    assert certificate_type(a3) == CERT_TYPE_A3
    plain = cert_factory(signer_key, name_factory("EMPRESA"), policies=())
    assert certificate_type(plain) == CERT_TYPE_A1


def test_extract_cnpj_and_cpf(signer_key, signer_cert, cert_factory, name_factory):
    assert extract_cnpj(signer_cert) == "12345678000195"
    assert extract_cpf(signer_cert) is None

    person = cert_factory(signer_key, name_factory("FULANO DE TAL:12345678901"))
    assert extract_cpf(person) == "12345678901"
    assert extract_cnpj(person) is None


def test_extract_cnpj_without_separator(signer_key, cert_factory, name_factory):
    cert = cert_factory(signer_key, name_factory("EMPRESA 98765432000110 LTDA"))
    assert extract_cnpj(cert) == "98765432000110"


def test_validate_for_nfe_use(signer_cert):
    validate_for_nfe_use(signer_cert)


def test_nfe_use_requires_client_auth(signer_key, cert_factory, name_factory):
    cert = cert_factory(
        signer_key, name_factory("EMPRESA EMAIL"), ekus=(ExtendedKeyUsageOID.EMAIL_PROTECTION,)
    )
    with pytest.raises(TrustError, match="clientAuth"):
        validate_for_nfe_use(cert)


def test_nfe_use_rejects_expired(signer_key, cert_factory, name_factory):
    now = datetime.now(timezone.utc)
    cert = cert_factory(
        signer_key,
        name_factory("EMPRESA VENCIDA"),
        not_before=now - timedelta(days=400),
        not_after=now - timedelta(days=1),
    )
    with pytest.raises(CertificateInvalidError, match="expirado"):
        validate_for_nfe_use(cert)


def test_nfe_use_rejects_foreign_certificate(signer_key, cert_factory, neutral_name):
    cert = cert_factory(signer_key, neutral_name, policies=())
    with pytest.raises(TrustError, match="ICP-Brasil"):
        validate_for_nfe_use(cert)
