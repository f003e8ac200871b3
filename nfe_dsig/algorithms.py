"""
URIs de algoritmos XMLDSig y su mapeo a funciones hash
"""
import base64
from typing import Dict, Optional

from cryptography.hazmat.primitives import hashes

from .exceptions import ConfigError

DS_NS = "http://www.w3.org/2000/09/xmldsig#"
EC_NS = "http://www.w3.org/2001/10/xml-exc-c14n#"

# Canonicalización
C14N_INCLUSIVE = "http://www.w3.org/TR/2001/REC-xml-c14n-20010315"
C14N_INCLUSIVE_WITH_COMMENTS = "http://www.w3.org/TR/2001/REC-xml-c14n-20010315#WithComments"
C14N_EXCLUSIVE = "http://www.w3.org/2001/10/xml-exc-c14n#"
C14N_EXCLUSIVE_WITH_COMMENTS = "http://www.w3.org/2001/10/xml-exc-c14n#WithComments"

# Transforms
TRANSFORM_ENVELOPED = "http://www.w3.org/2000/09/xmldsig#enveloped-signature"

# Digest
DIGEST_SHA1 = "http://www.w3.org/2000/09/xmldsig#sha1"
DIGEST_SHA256 = "http://www.w3.org/2001/04/xmlenc#sha256"

# Firma
SIGNATURE_RSA_SHA1 = "http://www.w3.org/2000/09/xmldsig#rsa-sha1"
SIGNATURE_RSA_SHA256 = "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256"

DIGEST_URIS: Dict[str, str] = {
    "sha1": DIGEST_SHA1,
    "sha256": DIGEST_SHA256,
}

SIGNATURE_URIS: Dict[str, str] = {
    "sha1": SIGNATURE_RSA_SHA1,
    "sha256": SIGNATURE_RSA_SHA256,
}

_DIGEST_BY_URI = {uri: name for name, uri in DIGEST_URIS.items()}
_SIGNATURE_BY_URI = {uri: name for name, uri in SIGNATURE_URIS.items()}


def hash_algorithm(name: str) -> hashes.HashAlgorithm:
    """Instancia el algoritmo hash de cryptography para 'sha1' o 'sha256'."""
    if name == "sha1":
        return hashes.SHA1()
    if name == "sha256":
        return hashes.SHA256()
    raise ConfigError("Algoritmo de digest no soportado", "digest_algorithm", name)


def digest_name_from_uri(uri: Optional[str]) -> Optional[str]:
    """DigestMethod URI -> 'sha1' | 'sha256' (None si no se reconoce)"""
    return _DIGEST_BY_URI.get(uri or "")


def hash_name_from_signature_uri(uri: Optional[str]) -> Optional[str]:
    """SignatureMethod URI -> 'sha1' | 'sha256' (None si no se reconoce)"""
    return _SIGNATURE_BY_URI.get(uri or "")


def compute_digest(data: bytes, name: str) -> bytes:
    h = hashes.Hash(hash_algorithm(name))
    h.update(data)
    return h.finalize()


def digest_b64(data: bytes, name: str) -> str:
    """Digest en base64, tal como va en DigestValue"""
    return base64.b64encode(compute_digest(data, name)).decode("ascii")
