"""
Tests del diagnóstico estructural de firma (requisitos SEFAZ)
"""
import pytest
from lxml import etree

from nfe_dsig.algorithms import DS_NS
from nfe_dsig.config import SigningConfig
from nfe_dsig.exceptions import ValidationError
from nfe_dsig.sefaz_validation import assert_signature_shape, inspect_signature
from nfe_dsig.xmldsig_signer import NFE_NS, sign

NS = {"ds": DS_NS, "nfe": NFE_NS}


@pytest.fixture
def signed_root(nfe_xml, nfe_id, provider):
    return sign(nfe_xml, nfe_id, provider)


def test_signed_nfe_passes_every_check(signed_root, nfe_id):
    report = inspect_signature(signed_root)
    assert report.is_valid, report.issues
    assert report.issues == []
    assert report.reference_uri == f"#{nfe_id}"
    assert "Válida: SI" in report.render()


def test_sha256_profile_expectation(nfe_xml, nfe_id, provider, signed_root):
    sha256_root = sign(nfe_xml, nfe_id, provider, SigningConfig.sha256())
    assert inspect_signature(sha256_root, SigningConfig.sha256()).is_valid

    report = inspect_signature(signed_root, SigningConfig.sha256())
    assert report.has_signature_method is False
    assert report.has_digest_method is False
    assert report.is_valid is False


def test_unsigned_document():
    report = inspect_signature(b"<NFe><infNFe Id='NFe1'/></NFe>")
    assert report.has_signature is False
    assert report.issues == ["No se encontró elemento Signature"]
    assert "Válida: NO" in report.render()


def test_prefixed_signature_is_flagged(signed_root):
    sig = signed_root.find("ds:Signature", NS)
    prefixed = etree.Element(f"{{{DS_NS}}}Signature", nsmap={"ds": DS_NS})
    for child in list(sig):
        prefixed.append(child)
    signed_root.replace(sig, prefixed)

    report = inspect_signature(signed_root)
    assert report.has_correct_namespace is False
    assert report.has_signature_value is True
    assert report.is_valid is False


def test_signature_inside_signed_element(signed_root):
    sig = signed_root.find("ds:Signature", NS)
    signed_root.find("nfe:infNFe", NS).append(sig)
    report = inspect_signature(signed_root)
    assert report.signature_placement_ok is False
    assert any("hermano siguiente" in issue for issue in report.issues)


def test_transforms_out_of_order(signed_root):
    transforms = signed_root.find(".//ds:Transforms", NS)
    first = transforms[0]
    transforms.remove(first)
    transforms.append(first)

    report = inspect_signature(signed_root)
    assert report.has_enveloped_transform is True
    assert report.has_c14n_transform is True
    assert report.transforms_in_order is False


def test_missing_enveloped_transform(signed_root):
    transforms = signed_root.find(".//ds:Transforms", NS)
    transforms.remove(transforms[0])
    report = inspect_signature(signed_root)
    assert report.has_enveloped_transform is False
    assert any("enveloped-signature" in issue for issue in report.issues)


def test_empty_signature_value_and_digest(signed_root):
    signed_root.find(".//ds:SignatureValue", NS).text = ""
    signed_root.find(".//ds:DigestValue", NS).text = "  "
    report = inspect_signature(signed_root)
    assert report.has_signature_value is False
    assert report.has_digest_value is False


@pytest.mark.parametrize("uri", ["", "#", "NFe41230512345678000195550010000000011000000015", "#NFe 1"])
def test_malformed_reference_uri(signed_root, uri):
    signed_root.find(".//ds:Reference", NS).set("URI", uri)
    report = inspect_signature(signed_root)
    assert report.has_reference_uri is False
    assert report.has_id_attribute is False


def test_reference_to_missing_id(signed_root):
    signed_root.find(".//ds:Reference", NS).set("URI", "#NFe999")
    report = inspect_signature(signed_root)
    assert report.has_reference_uri is True
    assert report.has_id_attribute is False
    assert any("NFe999" in issue for issue in report.issues)


def test_malformed_xml_raises():
    with pytest.raises(ValidationError):
        inspect_signature(b"<NFe><infNFe></NFe>")


def test_assert_signature_shape(signed_root):
    assert assert_signature_shape(signed_root).is_valid
    signed_root.find(".//ds:SignatureValue", NS).text = None
    with pytest.raises(ValidationError) as exc_info:
        assert_signature_shape(signed_root)
    assert "SignatureValue" in str(exc_info.value)
    assert isinstance(exc_info.value.value, list)
