"""
Diagnóstico estructural de la firma según lo que exige la SEFAZ

La SEFAZ responde solo con un código de rechazo opaco (ej: 297/298), así que
el diagnóstico local tiene que ser exhaustivo. Verifica:
- Signature en el namespace xmldsig (xmlns por defecto, sin prefijo)
- SignatureMethod / DigestMethod del perfil esperado
- DigestValue y SignatureValue presentes
- Transforms: enveloped-signature + C14N, en ese orden
- Reference/@URI con forma '#<Id>' y elemento con ese Id presente
- Signature como hermano siguiente del elemento referenciado
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from lxml import etree

from .algorithms import DS_NS, TRANSFORM_ENVELOPED
from .config import SigningConfig
from .exceptions import ValidationError
from .xml_utils import NS, IdIndex, XMLInput, as_element, find_signatures

logger = logging.getLogger(__name__)


@dataclass
class SignatureStructureReport:
    has_signature: bool = False
    has_correct_namespace: bool = False
    has_signature_method: bool = False
    has_digest_method: bool = False
    has_digest_value: bool = False
    has_signature_value: bool = False
    has_enveloped_transform: bool = False
    has_c14n_transform: bool = False
    transforms_in_order: bool = False
    has_reference_uri: bool = False
    has_id_attribute: bool = False
    signature_placement_ok: bool = False
    reference_uri: Optional[str] = None
    issues: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return (
            self.has_signature
            and self.has_correct_namespace
            and self.has_signature_method
            and self.has_digest_method
            and self.has_digest_value
            and self.has_signature_value
            and self.has_enveloped_transform
            and self.has_c14n_transform
            and self.transforms_in_order
            and self.has_reference_uri
            and self.has_id_attribute
            and self.signature_placement_ok
        )

    def render(self) -> str:
        """Reporte de texto para operadores / CLI"""

        def mark(ok: bool) -> str:
            return "OK " if ok else "ERR"

        lines = [
            "=== Diagnóstico de firma XMLDSig (SEFAZ) ===",
            f"Válida: {'SI' if self.is_valid else 'NO'}",
            "",
            f"[{mark(self.has_correct_namespace)}] Namespace xmldsig en Signature",
            f"[{mark(self.has_signature_method)}] SignatureMethod",
            f"[{mark(self.has_digest_method)}] DigestMethod",
            f"[{mark(self.has_digest_value)}] DigestValue",
            f"[{mark(self.has_signature_value)}] SignatureValue",
            f"[{mark(self.has_enveloped_transform)}] Transform enveloped-signature",
            f"[{mark(self.has_c14n_transform)}] Transform C14N",
            f"[{mark(self.transforms_in_order)}] Orden de Transforms",
            f"[{mark(self.has_reference_uri)}] Reference URI: {self.reference_uri}",
            f"[{mark(self.has_id_attribute)}] Elemento con el Id referenciado",
            f"[{mark(self.signature_placement_ok)}] Signature como hermano siguiente",
        ]
        if self.issues:
            lines.append("")
            lines.append("Problemas encontrados:")
            for i, issue in enumerate(self.issues, start=1):
                lines.append(f"{i}. {issue}")
        return "\n".join(lines)


def inspect_signature(document: XMLInput, expected: Optional[SigningConfig] = None) -> SignatureStructureReport:
    """
    Analiza la estructura de la primera Signature del documento.

    Args:
        document: XML firmado
        expected: perfil esperado (default: SHA-1 / RSA-SHA1 / C14N inclusivo)

    Returns:
        SignatureStructureReport con un flag por requisito e issues en orden

    Raises:
        ValidationError: si el XML no se puede parsear
    """
    expected = expected or SigningConfig()
    root = as_element(document, ValidationError)
    report = SignatureStructureReport()

    signatures = find_signatures(root)
    if not signatures:
        report.issues.append("No se encontró elemento Signature")
        return report
    report.has_signature = True
    sig = signatures[0]

    if sig.prefix is None and sig.nsmap.get(None) == DS_NS:
        report.has_correct_namespace = True
    else:
        report.issues.append(f"Signature debe declarar xmlns=\"{DS_NS}\" sin prefijo")

    signed_info = sig.find("ds:SignedInfo", NS)
    if signed_info is None:
        report.issues.append("No se encontró SignedInfo")
        return report

    sm = signed_info.find("ds:SignatureMethod", NS)
    if sm is None:
        report.issues.append("No se encontró SignatureMethod")
    elif sm.get("Algorithm") == expected.signature_algorithm_uri:
        report.has_signature_method = True
    else:
        report.issues.append(f"SignatureMethod incorrecto: {sm.get('Algorithm')} (esperado {expected.signature_algorithm_uri})")

    references = signed_info.findall("ds:Reference", NS)
    if not references:
        report.issues.append("No se encontró Reference")
        _check_signature_value(sig, report)
        return report
    if len(references) > 1:
        report.issues.append(f"Se esperaba exactamente una Reference, hay {len(references)}")
    reference = references[0]

    target = _check_reference_uri(root, reference, expected, report)
    _check_transforms(reference, expected, report)

    dm = reference.find("ds:DigestMethod", NS)
    if dm is None:
        report.issues.append("No se encontró DigestMethod")
    elif dm.get("Algorithm") == expected.digest_uri:
        report.has_digest_method = True
    else:
        report.issues.append(f"DigestMethod incorrecto: {dm.get('Algorithm')} (esperado {expected.digest_uri})")

    dv = reference.find("ds:DigestValue", NS)
    if dv is not None and (dv.text or "").strip():
        report.has_digest_value = True
    else:
        report.issues.append("DigestValue ausente o vacío")

    _check_signature_value(sig, report)

    if target is not None:
        if target.getnext() is sig:
            report.signature_placement_ok = True
        else:
            report.issues.append("Signature debe ser el hermano siguiente del elemento firmado")

    logger.debug(f"Diagnóstico de firma: valid={report.is_valid}, issues={len(report.issues)}")
    return report


def _check_reference_uri(root, reference, expected: SigningConfig, report: SignatureStructureReport):
    uri = reference.get("URI")
    report.reference_uri = uri
    if not uri or not uri.startswith("#") or len(uri) == 1 or any(c.isspace() for c in uri):
        report.issues.append(f"Reference URI ausente o mal formada (debe ser '#<Id>'): {uri!r}")
        return None
    report.has_reference_uri = True

    element_id = uri[1:]
    index = IdIndex(root, expected.id_attributes)
    target = index.get(element_id)
    if target is None:
        report.issues.append(f"No existe elemento con Id='{element_id}'")
        return None
    if index.is_ambiguous(element_id):
        report.issues.append(f"Id duplicado en el documento: '{element_id}'")
        return target
    report.has_id_attribute = True
    return target


def _check_transforms(reference, expected: SigningConfig, report: SignatureStructureReport):
    transforms = reference.find("ds:Transforms", NS)
    if transforms is None:
        report.issues.append("No se encontró Transforms")
        return
    algs = [t.get("Algorithm") for t in transforms.findall("ds:Transform", NS)]

    report.has_enveloped_transform = TRANSFORM_ENVELOPED in algs
    if not report.has_enveloped_transform:
        report.issues.append("Falta Transform enveloped-signature")

    report.has_c14n_transform = expected.canonicalization_uri in algs
    if not report.has_c14n_transform:
        report.issues.append(f"Falta Transform C14N ({expected.canonicalization_uri})")

    if algs == [TRANSFORM_ENVELOPED, expected.canonicalization_uri]:
        report.transforms_in_order = True
    else:
        report.issues.append(f"Transforms deben ser exactamente [enveloped-signature, C14N], encontrado: {algs}")


def _check_signature_value(sig: "etree._Element", report: SignatureStructureReport):
    sv = sig.find("ds:SignatureValue", NS)
    if sv is not None and (sv.text or "").strip():
        report.has_signature_value = True
    else:
        report.issues.append("SignatureValue ausente o vacío")


def assert_signature_shape(document: XMLInput, expected: Optional[SigningConfig] = None) -> SignatureStructureReport:
    """
    Igual que inspect_signature pero falla si hay algún problema.

    Raises:
        ValidationError: con el primer problema encontrado (todos en .value)
    """
    report = inspect_signature(document, expected)
    if not report.is_valid:
        raise ValidationError(f"Firma con estructura inválida: {report.issues[0]}", "Signature", report.issues)
    return report
