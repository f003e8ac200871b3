"""
Validación de firmas XMLDSig

SignatureValidator.validate() nunca lanza excepciones: todo defecto
detectable se acumula en el ValidationResult para que un solo pase muestre
todos los problemas estructurales y criptográficos.

IsValid = SignatureValid and CertificateValid and sin Errors
"""
import base64
import binascii
import logging
from dataclasses import asdict, dataclass, field
from typing import List, Mapping, Optional, Tuple

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from lxml import etree

from . import algorithms
from .algorithms import TRANSFORM_ENVELOPED
from .canonicalizer import canonicalize, config_from_method_element
from .certificate import CertificateInfo, check_validity_window, has_digital_signature_usage
from .config import CanonicalizationConfig, ValidationConfig
from .exceptions import CertificateInvalidError, DSigError, SignatureMismatchError, TrustError, ValidationError
from .trust import TrustValidator
from .xml_utils import IdIndex, NS, XMLInput, as_element, find_signatures, is_signature

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReferenceInfo:
    uri: str
    transforms: Tuple[str, ...]
    digest_method: Optional[str]
    digest_value: Optional[str]


@dataclass(frozen=True)
class SignatureInfo:
    """Datos extraídos de la Signature (solo lectura)"""

    canonicalization_method: Optional[str]
    signature_method: Optional[str]
    references: Tuple[ReferenceInfo, ...]
    signature_value: Optional[str]
    has_key_info: bool
    has_x509_data: bool
    certificate_count: int


@dataclass(frozen=True)
class ReferenceResult:
    """Resultado del digest de una Reference"""

    uri: str
    digest_method: Optional[str]
    expected_digest: Optional[str]
    computed_digest: Optional[str]
    digest_valid: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class ValidationResult:
    signature_valid: bool
    certificate_valid: bool
    trusted_chain: bool
    references: Tuple[ReferenceResult, ...] = ()
    errors: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()
    signature_algorithm: Optional[str] = None
    digest_algorithm: Optional[str] = None
    signature_info: Optional[SignatureInfo] = None
    certificate_info: Optional[CertificateInfo] = None

    @property
    def is_valid(self) -> bool:
        return self.signature_valid and self.certificate_valid and not self.errors

    def reference(self, uri: str) -> Optional[ReferenceResult]:
        for ref in self.references:
            if ref.uri == uri:
                return ref
        return None

    def raise_for_status(self) -> None:
        """
        Raises:
            SignatureMismatchError: digest o SignatureValue no verifican
            TrustError: cadena no confiable
            CertificateInvalidError: certificado fuera de vigencia o sin digitalSignature
            ValidationError: cualquier otro error acumulado
        """
        if self.is_valid:
            return
        detail = "; ".join(self.errors)
        if not self.signature_valid:
            raise SignatureMismatchError(f"Firma inválida: {detail}")
        if not self.certificate_valid:
            if not self.trusted_chain:
                raise TrustError(f"Certificado no confiable: {detail}")
            raise CertificateInvalidError(f"Certificado inválido: {detail}")
        raise ValidationError(f"Validación con errores: {detail}")

    def to_dict(self) -> dict:
        data = asdict(self)
        data["is_valid"] = self.is_valid
        return data


@dataclass
class _Report:
    signature_valid: bool = True
    certificate_valid: bool = True
    trusted_chain: bool = False
    references: List[ReferenceResult] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    signature_algorithm: Optional[str] = None
    digest_algorithm: Optional[str] = None
    signature_info: Optional[SignatureInfo] = None
    certificate_info: Optional[CertificateInfo] = None

    def error(self, message: str, signature: bool = False, certificate: bool = False):
        self.errors.append(message)
        if signature:
            self.signature_valid = False
        if certificate:
            self.certificate_valid = False

    def freeze(self) -> ValidationResult:
        return ValidationResult(
            signature_valid=self.signature_valid,
            certificate_valid=self.certificate_valid,
            trusted_chain=self.trusted_chain,
            references=tuple(self.references),
            errors=tuple(self.errors),
            warnings=tuple(self.warnings),
            signature_algorithm=self.signature_algorithm,
            digest_algorithm=self.digest_algorithm,
            signature_info=self.signature_info,
            certificate_info=self.certificate_info,
        )


def _text(el: Optional["etree._Element"]) -> Optional[str]:
    if el is None or el.text is None:
        return None
    return "".join(el.text.split())


def extract_signature_info(signature: "etree._Element") -> SignatureInfo:
    """Extrae métodos, References y datos de KeyInfo de una ds:Signature"""
    references = []
    for ref in signature.findall("ds:SignedInfo/ds:Reference", NS):
        transforms = tuple(t.get("Algorithm") or "" for t in ref.findall("ds:Transforms/ds:Transform", NS))
        dm = ref.find("ds:DigestMethod", NS)
        references.append(
            ReferenceInfo(
                uri=ref.get("URI", ""),
                transforms=transforms,
                digest_method=dm.get("Algorithm") if dm is not None else None,
                digest_value=_text(ref.find("ds:DigestValue", NS)),
            )
        )
    c14n = signature.find("ds:SignedInfo/ds:CanonicalizationMethod", NS)
    sm = signature.find("ds:SignedInfo/ds:SignatureMethod", NS)
    key_info = signature.find("ds:KeyInfo", NS)
    return SignatureInfo(
        canonicalization_method=c14n.get("Algorithm") if c14n is not None else None,
        signature_method=sm.get("Algorithm") if sm is not None else None,
        references=tuple(references),
        signature_value=_text(signature.find("ds:SignatureValue", NS)),
        has_key_info=key_info is not None,
        has_x509_data=signature.find("ds:KeyInfo/ds:X509Data", NS) is not None,
        certificate_count=len(signature.findall("ds:KeyInfo/ds:X509Data/ds:X509Certificate", NS)),
    )


def _embedded_certificates(signature: "etree._Element") -> List[x509.Certificate]:
    certs = []
    for el in signature.findall("ds:KeyInfo/ds:X509Data/ds:X509Certificate", NS):
        raw = _text(el)
        if not raw:
            raise ValidationError("X509Certificate vacío", "X509Certificate")
        try:
            certs.append(x509.load_der_x509_certificate(base64.b64decode(raw)))
        except (binascii.Error, ValueError) as e:
            raise ValidationError(f"X509Certificate inválido: {e}", "X509Certificate") from e
    return certs


def extract_certificate_from_signature(document: XMLInput) -> Optional[x509.Certificate]:
    """
    Certificado X.509 embebido en la primera Signature del documento.

    Returns:
        El certificado, o None si no hay Signature o KeyInfo/X509Certificate

    Raises:
        ValidationError: XML mal formado o certificado no decodificable
    """
    root = as_element(document, ValidationError)
    signatures = find_signatures(root)
    if not signatures:
        return None
    certs = _embedded_certificates(signatures[0])
    return certs[0] if certs else None


class SignatureValidator:
    """
    Validador XMLDSig.

    Args:
        config: ValidationConfig (tolerancia de reloj, algoritmos permitidos, ...)
        trust_validator: política de confianza; default ICP-Brasil
    """

    def __init__(self, config: Optional[ValidationConfig] = None, trust_validator: Optional[TrustValidator] = None):
        self.config = config or ValidationConfig()
        self.trust_validator = trust_validator or TrustValidator(
            clock=self.config.clock, clock_skew=self.config.clock_skew
        )

    def validate(
        self,
        document: XMLInput,
        certificate: Optional[x509.Certificate] = None,
        detached_content: Optional[Mapping[str, bytes]] = None,
    ) -> ValidationResult:
        """
        Valida la primera Signature del documento.

        Args:
            document: XML firmado (bytes/str/elemento)
            certificate: certificado a usar en lugar del embebido en KeyInfo
            detached_content: contenido externo por URI de Reference

        Returns:
            ValidationResult (nunca lanza)
        """
        report = _Report()
        try:
            self._validate(document, certificate, detached_content or {}, report)
        except DSigError as e:
            report.error(f"Error de validación: {e}", signature=True)
        except Exception as e:  # noqa: BLE001 - validate() nunca lanza
            logger.exception("Error inesperado validando firma")
            report.error(f"Error inesperado: {type(e).__name__}: {e}", signature=True)
        return report.freeze()

    def validate_detached(self, signature_xml: XMLInput, content: bytes, reference_uri: str) -> ValidationResult:
        """
        Valida una firma cuya Reference apunta a contenido externo.

        El digest se calcula sobre content (canonicalizado si la Reference
        declara un Transform C14N, en bytes crudos si no).
        """
        report = _Report()
        try:
            root = as_element(signature_xml, ValidationError)
            signatures = [root] if is_signature(root) else find_signatures(root)
            if signatures:
                info = extract_signature_info(signatures[0])
                if not any(ref.uri == reference_uri for ref in info.references):
                    report.error(f"No existe Reference con URI: {reference_uri}", signature=True)
        except DSigError as e:
            report.error(f"Error de validación: {e}", signature=True)
        if report.errors:
            return report.freeze()
        return self.validate(signature_xml, detached_content={reference_uri: content})

    # --- pasos ---

    def _validate(self, document, certificate, detached: Mapping[str, bytes], report: _Report) -> None:
        root = as_element(document, ValidationError)
        signatures = [root] if is_signature(root) else find_signatures(root)
        if not signatures:
            report.error("No se encontró elemento Signature", signature=True, certificate=True)
            return
        if len(signatures) > 1:
            report.warnings.append(f"El documento tiene {len(signatures)} firmas; se valida la primera")
        signature = signatures[0]

        info = extract_signature_info(signature)
        report.signature_info = info
        report.signature_algorithm = info.signature_method

        signed_info = signature.find("ds:SignedInfo", NS)
        if signed_info is None:
            report.error("Signature sin SignedInfo", signature=True)
            return

        c14n_config = self._signed_info_c14n(signed_info, report)
        hash_name = self._signature_hash(info.signature_method, report)

        index = IdIndex(root, self.config.id_attributes)
        refs = signed_info.findall("ds:Reference", NS)
        if not refs:
            report.error("SignedInfo sin Reference", signature=True)
        for ref_el, ref_info in zip(refs, info.references):
            report.references.append(self._validate_reference(root, index, ref_el, ref_info, detached, report))
        if report.references:
            report.digest_algorithm = report.references[0].digest_method

        cert, chain = self._select_certificate(signature, certificate, report)
        if cert is not None:
            report.certificate_info = CertificateInfo.from_certificate(cert, self.config.clock())
        if cert is not None and c14n_config is not None and hash_name is not None:
            self._verify_signature_value(signed_info, c14n_config, hash_name, info.signature_value, cert, report)
        else:
            report.signature_valid = False

        if cert is not None:
            self._validate_certificate(cert, chain, report)

    def _signed_info_c14n(self, signed_info, report: _Report) -> Optional[CanonicalizationConfig]:
        method = signed_info.find("ds:CanonicalizationMethod", NS)
        if method is None:
            report.error("SignedInfo sin CanonicalizationMethod", signature=True)
            return None
        try:
            return config_from_method_element(method)
        except DSigError as e:
            report.error(f"CanonicalizationMethod no soportado: {method.get('Algorithm')}", signature=True)
            logger.debug(f"{e}")
            return None

    def _signature_hash(self, signature_method: Optional[str], report: _Report) -> Optional[str]:
        if not signature_method:
            report.error("SignedInfo sin SignatureMethod", signature=True)
            return None
        hash_name = algorithms.hash_name_from_signature_uri(signature_method)
        if hash_name is None:
            report.error(f"SignatureMethod no soportado: {signature_method}", signature=True)
            return None
        if signature_method not in self.config.allowed_signature_algorithms:
            report.warnings.append(f"SignatureMethod fuera de la lista permitida: {signature_method}")
        return hash_name

    def _validate_reference(self, root, index: IdIndex, ref_el, ref: ReferenceInfo, detached, report: _Report) -> ReferenceResult:
        def fail(message: str) -> ReferenceResult:
            report.error(message, signature=True)
            return ReferenceResult(ref.uri, ref.digest_method, ref.digest_value, None, False, message)

        digest_name = algorithms.digest_name_from_uri(ref.digest_method)
        if digest_name is None:
            return fail(f"DigestMethod no soportado en Reference URI={ref.uri!r}: {ref.digest_method}")
        if ref.digest_method not in self.config.allowed_digest_algorithms:
            report.warnings.append(f"DigestMethod fuera de la lista permitida: {ref.digest_method}")
        if not ref.digest_value:
            return fail(f"Reference URI={ref.uri!r} sin DigestValue")

        c14n_config = CanonicalizationConfig()
        has_c14n = False
        for transform in ref_el.findall("ds:Transforms/ds:Transform", NS):
            alg = transform.get("Algorithm")
            if alg == TRANSFORM_ENVELOPED:
                continue
            try:
                c14n_config = config_from_method_element(transform)
                has_c14n = True
            except DSigError:
                return fail(f"Transform no soportado en Reference URI={ref.uri!r}: {alg}")

        try:
            if ref.uri in detached:
                content = detached[ref.uri]
                data = canonicalize(content, c14n_config) if has_c14n else content
            else:
                target = self._resolve(root, index, ref.uri)
                data = canonicalize(target, c14n_config, exclude=is_signature)
        except DSigError as e:
            return fail(f"Reference URI={ref.uri!r}: {e.message}")

        computed = algorithms.digest_b64(data, digest_name)
        if computed != ref.digest_value:
            return fail(f"Digest no coincide para Reference URI={ref.uri!r}")
        return ReferenceResult(ref.uri, ref.digest_method, ref.digest_value, computed, True)

    @staticmethod
    def _resolve(root, index: IdIndex, uri: str):
        if uri == "":
            return root
        if not uri.startswith("#") or len(uri) == 1:
            raise ValidationError("URI de Reference no soportada", "URI", uri)
        element_id = uri[1:]
        if index.is_ambiguous(element_id):
            raise ValidationError("Id duplicado en el documento", "URI", uri)
        target = index.get(element_id)
        if target is None:
            raise ValidationError("Elemento referenciado no encontrado", "URI", uri)
        return target

    def _select_certificate(self, signature, certificate, report: _Report):
        try:
            embedded = _embedded_certificates(signature)
        except ValidationError as e:
            report.error(str(e), certificate=True)
            embedded = []
        if certificate is not None:
            return certificate, embedded[1:]
        if not embedded:
            report.error("Certificado no encontrado en KeyInfo", signature=True, certificate=True)
            return None, []
        return embedded[0], embedded[1:]

    def _verify_signature_value(self, signed_info, c14n_config, hash_name, signature_value, cert, report: _Report):
        if not signature_value:
            report.error("SignatureValue vacío", signature=True)
            return
        try:
            raw = base64.b64decode(signature_value, validate=True)
        except (binascii.Error, ValueError):
            report.error("SignatureValue no es base64 válido", signature=True)
            return
        public_key = cert.public_key()
        if not isinstance(public_key, rsa.RSAPublicKey):
            report.error("La clave pública del certificado no es RSA", signature=True)
            return
        data = canonicalize(signed_info, c14n_config)
        try:
            public_key.verify(raw, data, padding.PKCS1v15(), algorithms.hash_algorithm(hash_name))
        except InvalidSignature:
            report.error("SignatureValue inválido: la firma no verifica con la clave del certificado", signature=True)

    def _validate_certificate(self, cert: x509.Certificate, chain: List[x509.Certificate], report: _Report):
        now = self.config.clock()
        problem = check_validity_window(cert, now, self.config.clock_skew)
        if problem:
            report.error(problem, certificate=True)
        if not has_digital_signature_usage(cert):
            report.error("El certificado no tiene key usage digitalSignature", certificate=True)

        report.trusted_chain = self.trust_validator.is_trusted(cert, chain)
        if not report.trusted_chain:
            if self.config.require_trusted_chain:
                report.error("Cadena de certificados no confiable (ICP-Brasil)", certificate=True)
            else:
                report.warnings.append("Cadena de certificados no confiable (ICP-Brasil)")


def validate(document: XMLInput, config: Optional[ValidationConfig] = None, certificate: Optional[x509.Certificate] = None) -> ValidationResult:
    """Atajo de SignatureValidator(config).validate(document, certificate)"""
    return SignatureValidator(config).validate(document, certificate)


def validate_detached(
    signature_xml: XMLInput,
    content: bytes,
    reference_uri: str,
    config: Optional[ValidationConfig] = None,
) -> ValidationResult:
    return SignatureValidator(config).validate_detached(signature_xml, content, reference_uri)
