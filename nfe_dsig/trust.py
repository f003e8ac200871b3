"""
Validación de confianza ICP-Brasil

La política es heurística: un certificado pertenece a la ICP-Brasil si el
subject/issuer contiene algún patrón de nombre conocido O si declara una
política con OID bajo 2.16.76.1. Basta con una de las dos condiciones
porque las AC intermedias completan esos campos de forma inconsistente.

La extracción de CNPJ/CPF también es heurística (búsqueda de patrones en el
Subject); NO es una afirmación criptográfica sobre el titular.
"""
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from .certificate import check_validity_window, has_digital_signature_usage
from .config import utc_now
from .exceptions import CertificateInvalidError, TrustError, ValidationError

logger = logging.getLogger(__name__)

CERT_TYPE_A1 = "A1"
CERT_TYPE_A3 = "A3"

POLICY_OID_A1 = "2.16.76.1.2.1"
POLICY_OID_A3 = "2.16.76.1.2.2"


@dataclass(frozen=True)
class TrustAnchor:
    """Patrones de nombre y prefijos de OID que definen la PKI nacional"""

    root_patterns: Sequence[str]
    ca_patterns: Sequence[str]
    policy_oid_prefixes: Sequence[str]


ICP_BRASIL = TrustAnchor(
    root_patterns=(
        "AC Raiz",
        "ICP-Brasil",
        "Instituto Nacional de Tecnologia da Informacao",
        "ITI",
        "Autoridade Certificadora Raiz Brasileira",
    ),
    ca_patterns=(
        "AC ",
        "Autoridade Certificadora",
        "Certisign",
        "Serasa",
        "SERPRO",
        "Caixa",
        "SOLUTI",
        "Valid",
        "DIGITALSIGN",
    ),
    policy_oid_prefixes=("2.16.76.1",),
)


def policy_oids(cert: x509.Certificate) -> List[str]:
    try:
        policies = cert.extensions.get_extension_for_class(x509.CertificatePolicies).value
    except x509.ExtensionNotFound:
        return []
    return [p.policy_identifier.dotted_string for p in policies]


def _is_ca(cert: x509.Certificate) -> bool:
    try:
        return cert.extensions.get_extension_for_class(x509.BasicConstraints).value.ca
    except x509.ExtensionNotFound:
        return False


def _extended_key_usages(cert: x509.Certificate) -> List[x509.ObjectIdentifier]:
    try:
        return list(cert.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value)
    except x509.ExtensionNotFound:
        return []


class TrustValidator:
    """
    Valida certificados contra la política de la PKI nacional.

    Args:
        anchor: patrones de confianza (default ICP-Brasil)
        clock: reloj UTC inyectable
        clock_skew: tolerancia para las ventanas de vigencia
    """

    def __init__(self, anchor: TrustAnchor = ICP_BRASIL, clock=utc_now, clock_skew: timedelta = timedelta(0)):
        self.anchor = anchor
        self.clock = clock
        self.clock_skew = clock_skew

    def matches_anchor(self, cert: x509.Certificate) -> bool:
        """Patrón de nombre en subject/issuer O política bajo un prefijo conocido"""
        subject = cert.subject.rfc4514_string()
        issuer = cert.issuer.rfc4514_string()

        for pattern in self.anchor.root_patterns:
            if pattern in issuer or pattern in subject:
                return True
        for pattern in self.anchor.ca_patterns:
            if pattern in issuer:
                return True
        for oid in policy_oids(cert):
            if any(oid.startswith(prefix) for prefix in self.anchor.policy_oid_prefixes):
                return True
        return False

    def check_leaf(self, cert: x509.Certificate) -> None:
        """
        Requisitos del certificado firmante.

        Raises:
            TrustError: sin digitalSignature, sin EKU clientAuth/emailProtection, o es CA
        """
        if not has_digital_signature_usage(cert):
            raise TrustError("El certificado debe tener key usage digitalSignature", "keyUsage")
        ekus = _extended_key_usages(cert)
        if ExtendedKeyUsageOID.CLIENT_AUTH not in ekus and ExtendedKeyUsageOID.EMAIL_PROTECTION not in ekus:
            raise TrustError(
                "El certificado debe tener extended key usage clientAuth o emailProtection",
                "extendedKeyUsage",
            )
        if _is_ca(cert):
            raise TrustError("Un certificado de CA no puede ser firmante", "basicConstraints", "CA:TRUE")

    def validate_chain(self, chain: Sequence[x509.Certificate]) -> None:
        """
        Valida una cadena [firmante, intermedio..., raíz].

        Raises:
            ValidationError: cadena vacía
            TrustError: firmante fuera de la PKI, certificado fuera de vigencia,
                cert[i] no firmado por cert[i+1], o requisitos del firmante
        """
        if not chain:
            raise ValidationError("La cadena de certificados no puede estar vacía", "chain")

        leaf = chain[0]
        if not self.matches_anchor(leaf):
            raise TrustError("El certificado no pertenece a la ICP-Brasil", "subject", leaf.subject.rfc4514_string())

        now = self.clock()
        for i, cert in enumerate(chain):
            problem = check_validity_window(cert, now, self.clock_skew)
            if problem:
                raise TrustError(f"Certificado {i} de la cadena: {problem}", "chain", i)
            if i < len(chain) - 1:
                try:
                    cert.verify_directly_issued_by(chain[i + 1])
                except (ValueError, TypeError, InvalidSignature) as e:
                    raise TrustError(f"El certificado {i} no está firmado por el certificado {i + 1}", "chain", i) from e

        self.check_leaf(leaf)

    def is_trusted(self, cert: x509.Certificate, chain: Optional[Sequence[x509.Certificate]] = None) -> bool:
        """
        True si cert (más los intermedios en chain, si se informan) cumple la política.
        """
        full_chain = [cert] + [c for c in (chain or ()) if c != cert]
        try:
            self.validate_chain(full_chain)
        except (TrustError, ValidationError) as e:
            logger.info(f"Certificado no confiable: {e}")
            return False
        return True


def certificate_type(cert: x509.Certificate) -> str:
    """
    Tipo ICP-Brasil según la política declarada (A1 / A3).

    Sin política reconocible se asume A1; en la práctica el tipo depende de
    cómo fue cargado el certificado.
    """
    for oid in policy_oids(cert):
        if oid.startswith(POLICY_OID_A1):
            return CERT_TYPE_A1
        if oid.startswith(POLICY_OID_A3):
            return CERT_TYPE_A3
    return CERT_TYPE_A1


def validate_for_nfe_use(cert: x509.Certificate, now: Optional[datetime] = None, validator: Optional[TrustValidator] = None) -> None:
    """
    Valida que el certificado pueda firmar NF-e.

    Raises:
        TrustError: fuera de la ICP-Brasil, sin digitalSignature, CA o sin clientAuth
        CertificateInvalidError: fuera de vigencia
    """
    validator = validator or TrustValidator()
    if not validator.matches_anchor(cert):
        raise TrustError("El certificado debe ser ICP-Brasil para uso en NF-e", "subject", cert.subject.rfc4514_string())

    problem = check_validity_window(cert, now or validator.clock())
    if problem:
        raise CertificateInvalidError(problem)

    if not has_digital_signature_usage(cert):
        raise TrustError("El certificado debe permitir firma digital para NF-e", "keyUsage")
    if _is_ca(cert):
        raise TrustError("Certificados de CA no pueden firmar NF-e", "basicConstraints", "CA:TRUE")
    if ExtendedKeyUsageOID.CLIENT_AUTH not in _extended_key_usages(cert):
        raise TrustError("El certificado debe tener extended key usage clientAuth para NF-e", "extendedKeyUsage")


def _common_name(cert: x509.Certificate) -> str:
    attrs = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    return str(attrs[0].value) if attrs else ""


def extract_cnpj(cert: x509.Certificate) -> Optional[str]:
    """
    CNPJ (14 dígitos) del Subject. Heurística: en certificados e-CNPJ el CN
    suele tener la forma "RAZAO SOCIAL:CNPJ". No verifica dígitos de control.
    """
    cn = _common_name(cert)
    if ":" in cn:
        candidate = cn.rsplit(":", 1)[1].strip()
        if re.fullmatch(r"\d{14}", candidate):
            return candidate
    m = re.search(r"(?<!\d)(\d{14})(?!\d)", cert.subject.rfc4514_string())
    return m.group(1) if m else None


def extract_cpf(cert: x509.Certificate) -> Optional[str]:
    """
    CPF (11 dígitos) del Subject. Heurística: en certificados e-CPF el CN
    suele tener la forma "NOME:CPF". No verifica dígitos de control.
    """
    cn = _common_name(cert)
    if ":" in cn:
        candidate = cn.rsplit(":", 1)[1].strip()
        if re.fullmatch(r"\d{11}", candidate):
            return candidate
    m = re.search(r"(?<!\d)(\d{11})(?!\d)", cert.subject.rfc4514_string())
    return m.group(1) if m else None
