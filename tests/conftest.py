"""
Pytest configuration y fixtures para tests de nfe_dsig
"""
import base64
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Sequence, Tuple

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID
from lxml import etree

from nfe_dsig.algorithms import DS_NS, digest_b64
from nfe_dsig.canonicalizer import canonicalize
from nfe_dsig.certificate import KeyPairCertificate

NFE_NS = "http://www.portalfiscal.inf.br/nfe"
NFE_ID = "NFe41230512345678000195550010000000011000000015"

ICP_OID_A1 = "2.16.76.1.2.1.3"
ICP_OID_A3 = "2.16.76.1.2.2.3"


# Registrar markers personalizados para evitar warnings
def pytest_configure(config):
    """Registra markers personalizados"""
    config.addinivalue_line(
        "markers", "requires_signxml: marca test que requiere signxml"
    )
    config.addinivalue_line(
        "markers", "requires_lxml: marca test que requiere lxml"
    )


def has_pkg(pkg_name: str) -> bool:
    """Verifica si un paquete está instalado"""
    try:
        __import__(pkg_name)
        return True
    except ImportError:
        return False


@pytest.fixture(autouse=True)
def check_optional_deps(request: pytest.FixtureRequest):
    """
    Fixture autouse que verifica markers de dependencias opcionales
    y skippea tests si falta el paquete requerido
    """
    marker_to_pkg = {
        "requires_signxml": "signxml",
        "requires_lxml": "lxml",
    }
    missing = []
    for marker in request.node.iter_markers():
        pkg_name = marker_to_pkg.get(marker.name)
        if pkg_name and not has_pkg(pkg_name):
            missing.append(pkg_name)
    if missing:
        pytest.skip(
            f"{', '.join(missing)} no está instalado. Instale con: pip install {' '.join(missing)}"
        )


def _name(cn: str, org: str = "ICP-Brasil", country: str = "BR") -> x509.Name:
    return x509.Name([
        x509.NameAttribute(NameOID.COUNTRY_NAME, country),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, org),
        x509.NameAttribute(NameOID.COMMON_NAME, cn),
    ])


def make_certificate(
    key: rsa.RSAPrivateKey,
    subject: x509.Name,
    issuer: Optional[x509.Name] = None,
    issuer_key: Optional[rsa.RSAPrivateKey] = None,
    not_before: Optional[datetime] = None,
    not_after: Optional[datetime] = None,
    is_ca: bool = False,
    digital_signature: bool = True,
    key_usage: bool = True,
    ekus: Sequence[x509.ObjectIdentifier] = (ExtendedKeyUsageOID.CLIENT_AUTH, ExtendedKeyUsageOID.EMAIL_PROTECTION),
    policies: Sequence[str] = (ICP_OID_A1,),
) -> x509.Certificate:
    """Certificado X.509 de prueba (autofirmado si no se informa issuer_key)"""
    now = datetime.now(timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer or subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or now - timedelta(days=1))
        .not_valid_after(not_after or now + timedelta(days=365))
        .add_extension(x509.BasicConstraints(ca=is_ca, path_length=None), critical=True)
    )
    if key_usage:
        builder = builder.add_extension(
            x509.KeyUsage(
                digital_signature=digital_signature,
                content_commitment=not is_ca,
                key_encipherment=not is_ca,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=is_ca,
                crl_sign=is_ca,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
    if ekus:
        builder = builder.add_extension(x509.ExtendedKeyUsage(list(ekus)), critical=False)
    if policies:
        builder = builder.add_extension(
            x509.CertificatePolicies([
                x509.PolicyInformation(x509.ObjectIdentifier(oid), None) for oid in policies
            ]),
            critical=False,
        )
    return builder.sign(issuer_key or key, hashes.SHA256())


@pytest.fixture(scope="session")
def ca_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def signer_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def other_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def ca_name():
    return _name("AC Teste ICP-Brasil v5")


@pytest.fixture(scope="session")
def ca_cert(ca_key, ca_name):
    return make_certificate(ca_key, ca_name, is_ca=True, ekus=(), policies=())


@pytest.fixture(scope="session")
def signer_cert(signer_key, ca_key, ca_name):
    """Certificado e-CNPJ A1 emitido por la AC de prueba"""
    return make_certificate(
        signer_key,
        _name("EMPRESA TESTE LTDA:12345678000195"),
        issuer=ca_name,
        issuer_key=ca_key,
    )


@pytest.fixture(scope="session")
def other_cert(other_key, ca_key, ca_name):
    return make_certificate(
        other_key,
        _name("OUTRA EMPRESA LTDA:98765432000110"),
        issuer=ca_name,
        issuer_key=ca_key,
    )


@pytest.fixture
def cert_factory() -> Callable[..., x509.Certificate]:
    return make_certificate


@pytest.fixture
def name_factory() -> Callable[..., x509.Name]:
    return _name


@pytest.fixture
def provider(signer_key, signer_cert):
    prov = KeyPairCertificate(signer_key, signer_cert)
    yield prov
    prov.close()


@pytest.fixture
def nfe_xml() -> bytes:
    """NF-e mínima sin firmar"""
    return (
        f'<NFe xmlns="{NFE_NS}">'
        f'<infNFe Id="{NFE_ID}" versao="4.00">'
        "<ide><cUF>41</cUF><natOp>VENDA DE MERCADORIA</natOp><mod>55</mod></ide>"
        "<emit><CNPJ>12345678000195</CNPJ><xNome>EMPRESA TESTE LTDA</xNome></emit>"
        "<total><ICMSTot><vNF>100.00</vNF></ICMSTot></total>"
        "</infNFe>"
        "</NFe>"
    ).encode("utf-8")


@pytest.fixture
def nfe_id() -> str:
    return NFE_ID


def _ds(tag: str) -> str:
    return f"{{{DS_NS}}}{tag}"


def build_manual_signature(
    root: etree._Element,
    references: List[Tuple[str, bytes]],
    key: rsa.RSAPrivateKey,
    cert: x509.Certificate,
    digest: str = "sha1",
    corrupt: Sequence[str] = (),
) -> etree._Element:
    """
    Arma una Signature con varias References y la agrega a root.

    references: lista de (URI, bytes ya canonicalizados a digerir); los
    digests se calculan sobre esos bytes tal cual, sin pasar por el motor
    corrupt: URIs cuyo DigestValue se altera ANTES de firmar SignedInfo
    """
    sig_uri = {
        "sha1": "http://www.w3.org/2000/09/xmldsig#rsa-sha1",
        "sha256": "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256",
    }[digest]
    digest_uri = {
        "sha1": "http://www.w3.org/2000/09/xmldsig#sha1",
        "sha256": "http://www.w3.org/2001/04/xmlenc#sha256",
    }[digest]
    c14n_uri = "http://www.w3.org/TR/2001/REC-xml-c14n-20010315"

    signature = etree.SubElement(root, _ds("Signature"), nsmap={None: DS_NS})
    signed_info = etree.SubElement(signature, _ds("SignedInfo"))
    etree.SubElement(signed_info, _ds("CanonicalizationMethod"), Algorithm=c14n_uri)
    etree.SubElement(signed_info, _ds("SignatureMethod"), Algorithm=sig_uri)
    for uri, data in references:
        ref = etree.SubElement(signed_info, _ds("Reference"), URI=uri)
        transforms = etree.SubElement(ref, _ds("Transforms"))
        etree.SubElement(transforms, _ds("Transform"), Algorithm="http://www.w3.org/2000/09/xmldsig#enveloped-signature")
        etree.SubElement(transforms, _ds("Transform"), Algorithm=c14n_uri)
        etree.SubElement(ref, _ds("DigestMethod"), Algorithm=digest_uri)
        value = digest_b64(data, digest)
        if uri in corrupt:
            value = base64.b64encode(b"\x00" * len(base64.b64decode(value))).decode("ascii")
        etree.SubElement(ref, _ds("DigestValue")).text = value

    hash_alg = hashes.SHA1() if digest == "sha1" else hashes.SHA256()
    signed_bytes = canonicalize(signed_info)
    raw = key.sign(signed_bytes, padding.PKCS1v15(), hash_alg)
    etree.SubElement(signature, _ds("SignatureValue")).text = base64.b64encode(raw).decode("ascii")
    key_info = etree.SubElement(signature, _ds("KeyInfo"))
    x509_data = etree.SubElement(key_info, _ds("X509Data"))
    etree.SubElement(x509_data, _ds("X509Certificate")).text = base64.b64encode(
        cert.public_bytes(serialization.Encoding.DER)
    ).decode("ascii")
    return signature


@pytest.fixture
def manual_signature() -> Callable[..., etree._Element]:
    return build_manual_signature
