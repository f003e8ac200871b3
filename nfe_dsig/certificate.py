"""
Certificados: capacidad CertificateProvider y utilidades X.509

La carga desde PKCS#12 (A1) o tokens PKCS#11 (A3) es responsabilidad de
colaboradores externos; este módulo define la interfaz que consume el motor
de firma y una implementación en memoria (clave + certificado ya cargados).
"""
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Sequence, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from .algorithms import hash_algorithm
from .config import utc_now
from .exceptions import CertificateError, CertificateInvalidError, ClosedError

logger = logging.getLogger(__name__)

MIN_RSA_KEY_SIZE = 2048


def not_valid_before(cert: x509.Certificate) -> datetime:
    # cryptography >= 42 expone *_utc (timezone-aware); antes era naive en UTC
    if hasattr(cert, "not_valid_before_utc"):
        return cert.not_valid_before_utc
    return cert.not_valid_before.replace(tzinfo=timezone.utc)


def not_valid_after(cert: x509.Certificate) -> datetime:
    if hasattr(cert, "not_valid_after_utc"):
        return cert.not_valid_after_utc
    return cert.not_valid_after.replace(tzinfo=timezone.utc)


def fingerprint_sha256(cert: x509.Certificate) -> str:
    """Huella SHA-256 en hex mayúsculas separada por ':'"""
    raw = cert.fingerprint(hashes.SHA256())
    return ":".join(f"{b:02X}" for b in raw)


def key_size(cert: x509.Certificate) -> Optional[int]:
    public_key = cert.public_key()
    if isinstance(public_key, rsa.RSAPublicKey):
        return public_key.key_size
    return None


def has_digital_signature_usage(cert: x509.Certificate) -> bool:
    """True si KeyUsage tiene digitalSignature; sin la extensión no se acepta para firmar"""
    try:
        ku = cert.extensions.get_extension_for_class(x509.KeyUsage).value
    except x509.ExtensionNotFound:
        return False
    return ku.digital_signature


def check_validity_window(
    cert: x509.Certificate,
    now: Optional[datetime] = None,
    skew: timedelta = timedelta(0),
) -> Optional[str]:
    """
    Verifica la vigencia del certificado.

    Returns:
        None si está vigente, o un mensaje de diagnóstico
    """
    now = now or utc_now()
    before = not_valid_before(cert)
    after = not_valid_after(cert)
    if after + skew < now:
        return f"Certificado expirado. Válido hasta: {after.isoformat()}"
    if before - skew > now:
        return f"Certificado aún no válido. Válido desde: {before.isoformat()}"
    return None


def validate_for_signing(
    cert: x509.Certificate,
    min_key_size: int = MIN_RSA_KEY_SIZE,
    now: Optional[datetime] = None,
) -> None:
    """
    Valida el certificado antes de firmar:
    - Vigencia (notBefore <= now <= notAfter)
    - Clave RSA de al menos min_key_size bits

    Raises:
        CertificateInvalidError: si alguna condición no se cumple
    """
    problem = check_validity_window(cert, now)
    if problem:
        raise CertificateInvalidError(problem, "notAfter", not_valid_after(cert).isoformat())

    if not isinstance(cert.public_key(), rsa.RSAPublicKey):
        raise CertificateInvalidError("La clave del certificado debe ser RSA", "public_key", type(cert.public_key()).__name__)

    size = key_size(cert)
    if size < min_key_size:
        raise CertificateInvalidError(
            f"La clave RSA debe ser de al menos {min_key_size} bits. Actual: {size} bits",
            "key_size",
            size,
        )


def is_valid_for_signing(cert: x509.Certificate, now: Optional[datetime] = None) -> bool:
    try:
        validate_for_signing(cert, now=now)
    except CertificateInvalidError:
        return False
    return has_digital_signature_usage(cert)


@dataclass(frozen=True)
class PublicCertificate:
    """Metadatos públicos del certificado (nunca incluye la clave privada)"""

    der: bytes
    subject: str
    issuer: str
    serial: int
    not_before: datetime
    not_after: datetime
    public_key: Any
    certificate: x509.Certificate

    @classmethod
    def from_x509(cls, cert: x509.Certificate) -> "PublicCertificate":
        return cls(
            der=cert.public_bytes(serialization.Encoding.DER),
            subject=cert.subject.rfc4514_string(),
            issuer=cert.issuer.rfc4514_string(),
            serial=cert.serial_number,
            not_before=not_valid_before(cert),
            not_after=not_valid_after(cert),
            public_key=cert.public_key(),
            certificate=cert,
        )


@dataclass(frozen=True)
class CertificateInfo:
    """Snapshot informativo de un certificado"""

    subject: str
    issuer: str
    serial_number: str
    not_valid_before: str
    not_valid_after: str
    fingerprint_sha256: str
    key_size: Optional[int]
    valid_for_signing: bool

    @classmethod
    def from_certificate(cls, cert: x509.Certificate, now: Optional[datetime] = None) -> "CertificateInfo":
        return cls(
            subject=cert.subject.rfc4514_string(),
            issuer=cert.issuer.rfc4514_string(),
            serial_number=str(cert.serial_number),
            not_valid_before=not_valid_before(cert).isoformat(),
            not_valid_after=not_valid_after(cert).isoformat(),
            fingerprint_sha256=fingerprint_sha256(cert),
            key_size=key_size(cert),
            valid_for_signing=is_valid_for_signing(cert, now),
        )

    def to_dict(self) -> dict:
        return dict(self.__dict__)


class CertificateProvider(ABC):
    """
    Capacidad de firma consumida por el motor.

    Implementaciones (A1 en archivo, A3 en token) deben permitir llamadas
    concurrentes a sign/public_certificate y hacer que close() deje la
    instancia inutilizable (ClosedError).
    """

    @abstractmethod
    def sign(self, data: bytes, hash_name: str) -> bytes:
        """Firma data con RSA PKCS#1 v1.5 usando el hash indicado ('sha1'|'sha256')"""

    @abstractmethod
    def public_certificate(self) -> PublicCertificate:
        """Metadatos públicos del certificado de firma"""

    def chain(self) -> Tuple[x509.Certificate, ...]:
        """Certificados intermedios disponibles (sin el certificado de firma)"""
        return ()

    @abstractmethod
    def close(self) -> None:
        """Libera el recurso; idempotente"""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class _ReadWriteLock:
    """
    Lock lectores/escritor: lecturas concurrentes, escritura exclusiva.
    Con un escritor en espera no entran lectores nuevos.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writing = False
        self._writers_waiting = 0

    @contextmanager
    def read(self):
        with self._cond:
            while self._writing or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writing or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writing = True
        try:
            yield
        finally:
            with self._cond:
                self._writing = False
                self._cond.notify_all()


class KeyPairCertificate(CertificateProvider):
    """Proveedor en memoria a partir de clave privada RSA + certificado ya cargados"""

    def __init__(
        self,
        private_key: rsa.RSAPrivateKey,
        certificate: x509.Certificate,
        chain: Sequence[x509.Certificate] = (),
    ):
        self._private_key = private_key
        self._certificate = certificate
        self._chain = tuple(chain)
        self._lock = _ReadWriteLock()
        self._closed = False

    @classmethod
    def from_pem(cls, cert_pem: bytes, key_pem: bytes, password: Optional[bytes] = None) -> "KeyPairCertificate":
        """
        Construye el proveedor desde PEM (certificado + clave separados).

        Raises:
            CertificateError: si el PEM no se puede cargar (sin exponer el password)
        """
        try:
            certificate = x509.load_pem_x509_certificate(cert_pem)
            private_key = serialization.load_pem_private_key(key_pem, password=password)
        except (ValueError, TypeError) as e:
            raise CertificateError(f"Error al cargar certificado/clave PEM: {type(e).__name__}") from None
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise CertificateInvalidError("La clave privada debe ser RSA", "private_key", type(private_key).__name__)
        return cls(private_key, certificate)

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_open(self):
        if self._closed:
            raise ClosedError("El proveedor de certificado fue cerrado")

    def sign(self, data: bytes, hash_name: str) -> bytes:
        with self._lock.read():
            self._ensure_open()
            return self._private_key.sign(data, padding.PKCS1v15(), hash_algorithm(hash_name))

    def public_certificate(self) -> PublicCertificate:
        with self._lock.read():
            self._ensure_open()
            return PublicCertificate.from_x509(self._certificate)

    def chain(self) -> Tuple[x509.Certificate, ...]:
        with self._lock.read():
            self._ensure_open()
            return self._chain

    def close(self) -> None:
        with self._lock.write():
            if self._closed:
                return
            self._closed = True
            self._private_key = None
            logger.debug(f"Proveedor de certificado cerrado: serial={self._certificate.serial_number}")
