"""
Motor de firma XMLDSig para documentos fiscales electrónicos (NF-e)
Canonicalización C14N, firma enveloped, validación y confianza ICP-Brasil
"""
from .cache import CachedCertificate, CertificateCache
from .canonicalizer import XMLCanonicalizer, canonicalize, method_from_uri
from .certificate import CertificateInfo, CertificateProvider, KeyPairCertificate, PublicCertificate
from .config import (
    CanonicalizationConfig,
    DSigConfig,
    SigningConfig,
    ValidationConfig,
    get_dsig_config,
)
from .exceptions import (
    CanonicalizationError,
    CertificateError,
    CertificateInvalidError,
    ClosedError,
    ConfigError,
    DSigError,
    ReferenceNotFoundError,
    SignatureMismatchError,
    TrustError,
    ValidationError,
)
from .sefaz_validation import SignatureStructureReport, assert_signature_shape, inspect_signature
from .signature_validator import (
    SignatureValidator,
    ValidationResult,
    extract_certificate_from_signature,
    validate,
    validate_detached,
)
from .trust import TrustAnchor, TrustValidator
from .xmldsig_signer import XMLDSigSigner, sign, sign_nfe

__version__ = "0.1.0"

__all__ = [
    'CachedCertificate', 'CertificateCache',
    'XMLCanonicalizer', 'canonicalize', 'method_from_uri',
    'CertificateInfo', 'CertificateProvider', 'KeyPairCertificate', 'PublicCertificate',
    'CanonicalizationConfig', 'DSigConfig', 'SigningConfig', 'ValidationConfig', 'get_dsig_config',
    'CanonicalizationError', 'CertificateError', 'CertificateInvalidError', 'ClosedError', 'ConfigError',
    'DSigError', 'ReferenceNotFoundError', 'SignatureMismatchError', 'TrustError', 'ValidationError',
    'SignatureStructureReport', 'assert_signature_shape', 'inspect_signature',
    'SignatureValidator', 'ValidationResult', 'extract_certificate_from_signature', 'validate', 'validate_detached',
    'TrustAnchor', 'TrustValidator',
    'XMLDSigSigner', 'sign', 'sign_nfe',
]
