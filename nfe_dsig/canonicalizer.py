"""
Canonicalización XML (C14N 1.0 inclusiva y exclusiva)

Serializador recursivo puro: nunca modifica el árbol de entrada. El
resultado es la forma canónica en bytes UTF-8, sin declaración XML y
sin tags auto-cerrados.

Reglas aplicadas:
- Declaraciones de namespace primero (xmlns por defecto antes que los
  prefijados, luego por prefijo), atributos ordenados por (URI, nombre local)
- En modo exclusivo solo se emiten los namespaces visiblemente usados por
  el elemento o sus atributos, más los listados en inclusive_prefixes
- CRLF/CR se normalizan a LF en nodos de texto, sin recortar espacios
- Comentarios se descartan salvo with_comments
"""
import logging
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from lxml import etree

from . import algorithms
from .config import METHOD_EXCLUSIVE, METHOD_INCLUSIVE, CanonicalizationConfig
from .exceptions import CanonicalizationError
from .xml_utils import XMLInput, as_element

logger = logging.getLogger(__name__)

XML_NS = "http://www.w3.org/XML/1998/namespace"

ExcludePredicate = Callable[["etree._Element"], bool]

_URI_TO_CONFIG = {
    algorithms.C14N_INCLUSIVE: (METHOD_INCLUSIVE, False),
    algorithms.C14N_INCLUSIVE_WITH_COMMENTS: (METHOD_INCLUSIVE, True),
    algorithms.C14N_EXCLUSIVE: (METHOD_EXCLUSIVE, False),
    algorithms.C14N_EXCLUSIVE_WITH_COMMENTS: (METHOD_EXCLUSIVE, True),
}


def method_from_uri(uri: str, inclusive_prefixes: Sequence[str] = ()) -> CanonicalizationConfig:
    """
    Traduce un Algorithm de CanonicalizationMethod/Transform a configuración.

    Raises:
        CanonicalizationError: si la URI no es un método C14N soportado
    """
    if uri not in _URI_TO_CONFIG:
        raise CanonicalizationError("Método de canonicalización no soportado", "Algorithm", uri)
    method, with_comments = _URI_TO_CONFIG[uri]
    prefixes = tuple(inclusive_prefixes) if method == METHOD_EXCLUSIVE else ()
    return CanonicalizationConfig(method=method, inclusive_prefixes=prefixes, with_comments=with_comments)


def config_from_method_element(method_el: "etree._Element") -> CanonicalizationConfig:
    """
    Configuración a partir de un elemento CanonicalizationMethod o Transform,
    leyendo el PrefixList de ec:InclusiveNamespaces si existe.
    """
    uri = method_el.get("Algorithm")
    prefixes: Tuple[str, ...] = ()
    inc = method_el.find(f"{{{algorithms.EC_NS}}}InclusiveNamespaces")
    if inc is not None:
        prefixes = tuple((inc.get("PrefixList") or "").split())
    return method_from_uri(uri, prefixes)


def _escape_text(value: str) -> str:
    value = value.replace("\r\n", "\n").replace("\r", "\n")
    return value.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def _escape_attr(value: str) -> str:
    return (
        value.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace('"', "&quot;")
        .replace("\t", "&#x9;")
        .replace("\n", "&#xA;")
        .replace("\r", "&#xD;")
    )


def _split_tag(tag: str) -> Tuple[str, str]:
    if tag.startswith("{"):
        uri, local = tag[1:].split("}", 1)
        return uri, local
    return "", tag


class XMLCanonicalizer:
    """Canonicalizador configurable; sin estado mutable, seguro entre hilos."""

    def __init__(self, config: Optional[CanonicalizationConfig] = None):
        self.config = config or CanonicalizationConfig()

    def canonicalize(self, node: XMLInput, exclude: Optional[ExcludePredicate] = None) -> bytes:
        """
        Canonicaliza el subárbol de node.

        Args:
            node: elemento lxml, árbol, o XML en bytes/str
            exclude: predicado; los elementos para los que devuelve True se
                omiten junto con su subárbol (su tail se conserva). Se usa
                para la transformación enveloped-signature.

        Returns:
            Forma canónica en bytes UTF-8

        Raises:
            CanonicalizationError: XML mal formado, sin raíz o con entidades sin expandir
        """
        apex = as_element(node, CanonicalizationError)
        out: List[str] = []
        self._element(apex, {}, out, exclude, apex=True)
        return "".join(out).encode("utf-8")

    # --- serialización ---

    def _element(self, el, rendered: Dict[Optional[str], str], out: List[str], exclude, apex: bool = False):
        qname = self._qname(el)
        ns_decls, attrs = self._namespaces_and_attributes(el, rendered, apex)

        out.append("<")
        out.append(qname)
        scope = dict(rendered)
        for prefix, uri in ns_decls:
            scope[prefix] = uri
            if prefix is None:
                out.append(f' xmlns="{_escape_attr(uri)}"')
            else:
                out.append(f' xmlns:{prefix}="{_escape_attr(uri)}"')
        for _key, name, value in attrs:
            out.append(f' {name}="{_escape_attr(value)}"')
        out.append(">")

        if el.text:
            out.append(_escape_text(el.text))
        for child in el:
            self._child(child, scope, out, exclude)
            if child.tail:
                out.append(_escape_text(child.tail))

        out.append("</")
        out.append(qname)
        out.append(">")

    def _child(self, child, scope, out: List[str], exclude):
        tag = child.tag
        if tag is etree.Comment:
            if self.config.with_comments:
                out.append(f"<!--{child.text or ''}-->")
            return
        if tag is etree.PI:
            data = child.text
            out.append(f"<?{child.target} {data}?>" if data else f"<?{child.target}?>")
            return
        if tag is etree.Entity:
            raise CanonicalizationError("Referencia a entidad no expandida", "entity", child.text)
        if exclude is not None and exclude(child):
            return
        self._element(child, scope, out, exclude)

    @staticmethod
    def _qname(el) -> str:
        _uri, local = _split_tag(el.tag)
        return f"{el.prefix}:{local}" if el.prefix else local

    def _namespaces_and_attributes(self, el, rendered, apex: bool):
        in_scope = el.nsmap
        el_uri, _local = _split_tag(el.tag)
        if el.prefix is None:
            default_uri = el_uri
        else:
            default_uri = in_scope.get(None) or ""

        attrs = []
        used_prefixes = {el.prefix}
        for i, (key, value) in enumerate(el.attrib.items(), start=1):
            uri, local = _split_tag(key)
            if not uri:
                attrs.append((("", local), local, value))
                continue
            if uri == XML_NS:
                attrs.append(((uri, local), f"xml:{local}", value))
                continue
            name = el.xpath(f"name(@*[{i}])")
            if ":" in name:
                used_prefixes.add(name.split(":", 1)[0])
            attrs.append(((uri, local), name, value))

        if apex and not self.config.exclusive:
            present = {key for key, _n, _v in attrs}
            for local, value in self._inherited_xml_attributes(el):
                if (XML_NS, local) not in present:
                    attrs.append(((XML_NS, local), f"xml:{local}", value))

        attrs.sort(key=lambda a: a[0])

        if self.config.exclusive:
            candidates = set(used_prefixes)
            for p in self.config.inclusive_prefixes:
                candidates.add(None if p == "#default" else p)
        else:
            candidates = {p for p in in_scope if p is not None}
            candidates.add(None)

        decls = []
        for prefix in candidates:
            if prefix == "xml":
                continue
            if prefix is None:
                if rendered.get(None, "") != default_uri:
                    decls.append((None, default_uri))
                continue
            uri = in_scope.get(prefix)
            if uri is None:
                continue
            if rendered.get(prefix) != uri:
                decls.append((prefix, uri))
        decls.sort(key=lambda d: "" if d[0] is None else d[0])
        return decls, attrs

    @staticmethod
    def _inherited_xml_attributes(el) -> List[Tuple[str, str]]:
        found: Dict[str, str] = {}
        parent = el.getparent()
        while parent is not None:
            for key, value in parent.attrib.items():
                uri, local = _split_tag(key)
                if uri == XML_NS and local not in found:
                    found[local] = value
            parent = parent.getparent()
        return list(found.items())


def canonicalize(
    node: XMLInput,
    config: Optional[CanonicalizationConfig] = None,
    exclude: Optional[ExcludePredicate] = None,
) -> bytes:
    """Atajo funcional de XMLCanonicalizer(config).canonicalize(node, exclude)"""
    return XMLCanonicalizer(config).canonicalize(node, exclude)
