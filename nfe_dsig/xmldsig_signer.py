"""
Firma XMLDSig para documentos fiscales (NF-e)

Implementa firma digital XMLDSig Enveloped:
- Reference URI="#<Id del elemento firmado>"
- Transforms: enveloped-signature + método C14N (en ese orden)
- Digest/Signature: SHA-1 + RSA-SHA1 (default) o SHA-256 + RSA-SHA256
- X509Certificate en KeyInfo (opcional)
- <Signature> insertada como hermano siguiente del elemento firmado

La firma se construye sobre una copia del documento: ante cualquier falla
el documento de entrada queda intacto y nunca se devuelve una firma parcial.
"""
import base64
import copy
import logging
from typing import Optional

from lxml import etree

from .algorithms import DS_NS, TRANSFORM_ENVELOPED, digest_b64
from .canonicalizer import canonicalize, method_from_uri
from .certificate import CertificateProvider, PublicCertificate, validate_for_signing
from .config import SigningConfig
from .exceptions import (
    CanonicalizationError,
    CertificateError,
    DSigError,
    ReferenceNotFoundError,
    ValidationError,
)
from .pipeline_logger import PipelineLogger
from .xml_utils import IdIndex, XMLInput, as_element, is_signature, local_name, to_bytes

logger = logging.getLogger(__name__)

NFE_NS = "http://www.portalfiscal.inf.br/nfe"


def _ds(tag: str) -> str:
    return f"{{{DS_NS}}}{tag}"


class XMLDSigSigner:
    """
    Firmador XMLDSig enveloped.

    Estados: Unsigned -> DigestComputed -> SignatureComputed -> Embedded.
    Sin estado mutable entre llamadas; una instancia puede usarse desde
    varios hilos.
    """

    def __init__(self, config: Optional[SigningConfig] = None, pipeline_logger: Optional[PipelineLogger] = None):
        self.config = config or SigningConfig()
        self.pipeline_logger = pipeline_logger

    def sign(self, document: XMLInput, target_id: str, provider: CertificateProvider) -> "etree._Element":
        """
        Firma el elemento cuyo Id es target_id.

        Args:
            document: documento (elemento, árbol o XML en bytes/str); no se modifica
            target_id: valor del atributo Id del elemento a firmar (sin '#')
            provider: capacidad de firma (A1/A3)

        Returns:
            Raíz de un nuevo árbol con la Signature embebida

        Raises:
            ValidationError: target_id vacío o ambiguo, o elemento sin padre
            ReferenceNotFoundError: no existe elemento con ese Id
            CertificateInvalidError: certificado vencido, no RSA o clave corta
            CertificateError: el proveedor falló al firmar
            CanonicalizationError: XML mal formado
        """
        if self.pipeline_logger is None:
            return self._sign(document, target_id, provider)
        with self.pipeline_logger.log_context(
            "xmldsig_sign",
            target_id=target_id,
            digest=self.config.digest_algorithm,
            c14n=self.config.canonicalization_uri,
        ):
            return self._sign(document, target_id, provider)

    def _sign(self, document: XMLInput, target_id: str, provider: CertificateProvider) -> "etree._Element":
        config = self.config
        if not target_id:
            raise ValidationError("Id del elemento a firmar no informado", "target_id", target_id)
        target_id = target_id.lstrip("#")

        root = copy.deepcopy(as_element(document, CanonicalizationError))

        # 1. Localizar el elemento
        index = IdIndex(root, config.id_attributes)
        target = index.get(target_id)
        if target is None:
            raise ReferenceNotFoundError(f"No se encontró elemento con Id={target_id}", "target_id", target_id)
        if index.is_ambiguous(target_id):
            raise ValidationError(f"Id duplicado en el documento: {target_id}", "target_id", target_id)
        parent = target.getparent()
        if parent is None:
            raise ValidationError(
                "El elemento firmado no puede ser la raíz: la Signature va como hermano siguiente",
                "target_id",
                target_id,
            )

        # Certificado antes de cualquier canonicalización
        public = _checked_certificate(provider, config)
        logger.info(
            f"Firmando {local_name(target)} Id={target_id} "
            f"(digest={config.digest_algorithm}, c14n={config.canonicalization_uri}, "
            f"cert serial={public.serial}, subject={public.subject})"
        )

        c14n = method_from_uri(config.canonicalization_uri)

        # 2. DigestComputed
        target_c14n = canonicalize(target, c14n, exclude=is_signature)
        digest_value = digest_b64(target_c14n, config.digest_algorithm)

        # 3. Armar Signature y canonicalizar SignedInfo en su posición final,
        #    así hereda los namespaces reales de sus ancestros
        signature, signed_info, signature_value = self._build_signature(f"#{target_id}", digest_value, public.der)
        parent.insert(parent.index(target) + 1, signature)

        signed_info_c14n = canonicalize(signed_info, c14n)
        raw_signature = _provider_call(provider.sign, signed_info_c14n, config.digest_algorithm)

        # 4. Embedded
        signature_value.text = base64.b64encode(raw_signature).decode("ascii")
        logger.debug(f"Firma embebida para Id={target_id}")
        return root

    def sign_detached(self, content: bytes, reference_uri: str, provider: CertificateProvider) -> "etree._Element":
        """
        Firma contenido externo al XML (firma detached).

        La Reference no declara Transforms: el digest se calcula sobre los
        bytes crudos de content. Se verifica con validate_detached().

        Returns:
            Elemento <Signature> independiente (raíz de su propio árbol)

        Raises:
            ValidationError: content o reference_uri vacíos
            CertificateInvalidError: certificado vencido, no RSA o clave corta
            CertificateError: el proveedor falló
        """
        if not content:
            raise ValidationError("Contenido a firmar vacío", "content", "")
        if not reference_uri:
            raise ValidationError("URI de la Reference no informada", "reference_uri", reference_uri)

        config = self.config
        public = _checked_certificate(provider, config)
        logger.info(
            f"Firmando contenido externo URI={reference_uri} "
            f"(digest={config.digest_algorithm}, cert serial={public.serial})"
        )

        digest_value = digest_b64(content, config.digest_algorithm)
        signature, signed_info, signature_value = self._build_signature(
            reference_uri, digest_value, public.der, enveloped=False
        )
        signed_info_c14n = canonicalize(signed_info, method_from_uri(config.canonicalization_uri))
        raw_signature = _provider_call(provider.sign, signed_info_c14n, config.digest_algorithm)
        signature_value.text = base64.b64encode(raw_signature).decode("ascii")
        return signature

    def _build_signature(self, uri: str, digest_value: str, cert_der: bytes, enveloped: bool = True):
        config = self.config
        signature = etree.Element(_ds("Signature"), nsmap={None: DS_NS})
        signed_info = etree.SubElement(signature, _ds("SignedInfo"))
        etree.SubElement(signed_info, _ds("CanonicalizationMethod"), Algorithm=config.canonicalization_uri)
        etree.SubElement(signed_info, _ds("SignatureMethod"), Algorithm=config.signature_algorithm_uri)

        reference = etree.SubElement(signed_info, _ds("Reference"), URI=uri)
        if enveloped:
            transforms = etree.SubElement(reference, _ds("Transforms"))
            etree.SubElement(transforms, _ds("Transform"), Algorithm=TRANSFORM_ENVELOPED)
            etree.SubElement(transforms, _ds("Transform"), Algorithm=config.canonicalization_uri)
        etree.SubElement(reference, _ds("DigestMethod"), Algorithm=config.digest_uri)
        etree.SubElement(reference, _ds("DigestValue")).text = digest_value

        signature_value = etree.SubElement(signature, _ds("SignatureValue"))

        if config.include_certificate:
            key_info = etree.SubElement(signature, _ds("KeyInfo"))
            x509_data = etree.SubElement(key_info, _ds("X509Data"))
            etree.SubElement(x509_data, _ds("X509Certificate")).text = base64.b64encode(cert_der).decode("ascii")

        return signature, signed_info, signature_value


def _provider_call(method, *args):
    try:
        return method(*args)
    except DSigError:
        raise
    except Exception as e:
        # Sin str(e): el proveedor podría incluir datos sensibles (PIN, token)
        raise CertificateError(f"Falla del proveedor de certificado: {type(e).__name__}") from None


def _checked_certificate(provider: CertificateProvider, config: SigningConfig) -> PublicCertificate:
    public = _provider_call(provider.public_certificate)
    validate_for_signing(public.certificate, config.min_key_size)
    return public


def sign(
    document: XMLInput,
    target_id: str,
    provider: CertificateProvider,
    config: Optional[SigningConfig] = None,
) -> "etree._Element":
    """Atajo de XMLDSigSigner(config).sign(document, target_id, provider)"""
    return XMLDSigSigner(config).sign(document, target_id, provider)


def _extract_infnfe_id(root: "etree._Element") -> Optional[str]:
    for elem in root.iter(f"{{{NFE_NS}}}infNFe", "infNFe"):
        value = elem.get("Id")
        if value:
            return value
    return None


def sign_nfe(xml: XMLInput, provider: CertificateProvider, config: Optional[SigningConfig] = None) -> bytes:
    """
    Firma una NF-e localizando el Id de <infNFe>.

    Args:
        xml: XML de la NF-e (<NFe> o <enviNFe>)
        provider: capacidad de firma

    Returns:
        XML firmado en bytes UTF-8 (sin pretty_print)

    Raises:
        ValidationError: si no existe infNFe con Id
    """
    root = as_element(xml, CanonicalizationError)
    nfe_id = _extract_infnfe_id(root)
    if not nfe_id:
        raise ValidationError("No se encontró atributo Id en el elemento infNFe", "infNFe/@Id")
    signed = sign(root, nfe_id, provider, config)
    return to_bytes(signed, xml_declaration=True)
