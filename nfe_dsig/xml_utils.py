"""
Utilidades XML: parser endurecido, índice de Ids y búsqueda de Signature
"""
import logging
from typing import Dict, Iterable, List, Optional, Type, Union

from lxml import etree

from .algorithms import DS_NS
from .config import DEFAULT_ID_ATTRIBUTES
from .exceptions import CanonicalizationError, DSigError

logger = logging.getLogger(__name__)

NS = {"ds": DS_NS}
SIGNATURE_TAG = f"{{{DS_NS}}}Signature"

XMLInput = Union[bytes, str, "etree._Element", "etree._ElementTree"]


def make_parser() -> "etree.XMLParser":
    # No tocar whitespace: la canonicalización lo preserva
    return etree.XMLParser(
        remove_blank_text=False,
        resolve_entities=False,
        no_network=True,
        huge_tree=False,
        recover=False,
    )


def parse_xml(data: Union[bytes, str], error_cls: Type[DSigError] = CanonicalizationError) -> "etree._Element":
    """
    Parsea XML y devuelve el elemento raíz.

    Raises:
        error_cls: si el contenido está vacío, mal formado o sin elemento raíz
    """
    if data is None:
        raise error_cls("Contenido XML no informado", "xml", None)
    if isinstance(data, str):
        data = data.encode("utf-8")
    if not data.strip():
        raise error_cls("Contenido XML vacío", "xml", "")
    try:
        root = etree.fromstring(data, parser=make_parser())
    except etree.XMLSyntaxError as e:
        raise error_cls(f"XML mal formado: {e}", "xml") from e
    if root is None:
        raise error_cls("Documento sin elemento raíz", "root")
    return root


def as_element(node: XMLInput, error_cls: Type[DSigError] = CanonicalizationError) -> "etree._Element":
    """Acepta bytes/str/árbol/elemento y devuelve un elemento"""
    if isinstance(node, (bytes, str)):
        return parse_xml(node, error_cls)
    if isinstance(node, etree._ElementTree):
        root = node.getroot()
        if root is None:
            raise error_cls("Documento sin elemento raíz", "root")
        return root
    if isinstance(node, etree._Element):
        if not isinstance(node.tag, str):
            raise error_cls("El nodo no es un elemento", "node", type(node).__name__)
        return node
    raise error_cls("Tipo de entrada no soportado", "node", type(node).__name__)


def local_name(element: "etree._Element") -> str:
    return etree.QName(element).localname


def is_signature(element: "etree._Element") -> bool:
    return element.tag == SIGNATURE_TAG


def find_signatures(root: "etree._Element") -> List["etree._Element"]:
    """Todas las ds:Signature del documento, en orden de documento"""
    return list(root.iter(SIGNATURE_TAG))


def to_bytes(root: "etree._Element", xml_declaration: bool = False) -> bytes:
    # SEFAZ es sensible a whitespace - NO pretty_print
    return etree.tostring(
        root.getroottree() if xml_declaration else root,
        encoding="UTF-8",
        xml_declaration=xml_declaration,
        pretty_print=False,
    )


class IdIndex:
    """
    Índice Id -> elemento construido una sola vez por documento.

    Los nombres de atributo se consultan en el orden configurado
    (por defecto Id, id, ID); el primero que resuelve gana.
    """

    def __init__(self, root: "etree._Element", id_attributes: Iterable[str] = DEFAULT_ID_ATTRIBUTES):
        self.id_attributes = tuple(id_attributes)
        self._by_attr: Dict[str, Dict[str, List["etree._Element"]]] = {a: {} for a in self.id_attributes}
        for element in root.iter(tag=etree.Element):
            for attr in self.id_attributes:
                value = element.get(attr)
                if value is not None:
                    self._by_attr[attr].setdefault(value, []).append(element)

    def get(self, element_id: str) -> Optional["etree._Element"]:
        for attr in self.id_attributes:
            matches = self._by_attr[attr].get(element_id)
            if matches:
                return matches[0]
        return None

    def matches(self, element_id: str) -> List["etree._Element"]:
        found: List["etree._Element"] = []
        for attr in self.id_attributes:
            for element in self._by_attr[attr].get(element_id, []):
                if element not in found:
                    found.append(element)
        return found

    def is_ambiguous(self, element_id: str) -> bool:
        """True si más de un elemento declara el mismo Id"""
        return len(self.matches(element_id)) > 1

    def __contains__(self, element_id: str) -> bool:
        return self.get(element_id) is not None

    def __len__(self) -> int:
        return sum(len(v) for by_value in self._by_attr.values() for v in by_value.values())
