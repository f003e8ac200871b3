"""
Excepciones del motor de firma XMLDSig para NF-e

Taxonomía:
- ValidationError: entrada del llamador mal formada o ausente (no reintentable)
- CertificateError: certificado vencido, algoritmo incompatible, proveedor no disponible
- CanonicalizationError: XML mal formado o sin elemento raíz
- SignatureMismatchError: digest o firma no verifican (nunca se reintenta)
- TrustError: falla de cadena o de política ICP-Brasil
"""
from typing import Any, Optional


class DSigError(Exception):
    """Excepción base del paquete"""

    code = "DSIG"
    retriable = False

    def __init__(self, message: str, field: Optional[str] = None, value: Any = None):
        super().__init__(message)
        self.message = message
        self.field = field
        self.value = value

    def __str__(self) -> str:
        if self.field:
            return f"[{self.code}] {self.message} (campo: {self.field}, valor: {self.value})"
        return f"[{self.code}] {self.message}"


class ConfigError(DSigError):
    """Configuración inválida"""

    code = "CONFIG"


class ValidationError(DSigError):
    """Entrada inválida del llamador"""

    code = "VALIDATION"


class ReferenceNotFoundError(ValidationError):
    """No existe un elemento con el Id referenciado"""

    pass


class CertificateError(DSigError):
    """Error de certificado o del proveedor de firma"""

    code = "CERTIFICATE"
    retriable = True


class CertificateInvalidError(CertificateError):
    """Certificado fuera de vigencia o con clave no soportada"""

    retriable = False


class ClosedError(CertificateError):
    """El proveedor de certificado ya fue cerrado"""

    retriable = False


class CanonicalizationError(DSigError):
    """Falla al canonicalizar XML"""

    code = "XML"


class SignatureMismatchError(DSigError):
    """Digest o SignatureValue no coinciden"""

    code = "SIGNATURE"


class TrustError(DSigError):
    """Cadena de certificados o política no confiable"""

    code = "TRUST"
