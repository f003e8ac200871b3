"""
Configuración del motor de firma XMLDSig

Los valores por defecto reproducen el perfil aceptado por la SEFAZ:
RSA-SHA1 + C14N 1.0 inclusivo + certificado embebido en KeyInfo.
"""
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple

from dotenv import load_dotenv

from . import algorithms
from .exceptions import ConfigError

load_dotenv()

METHOD_INCLUSIVE = "c14n10-inclusive"
METHOD_EXCLUSIVE = "c14n10-exclusive"

DEFAULT_ID_ATTRIBUTES = ("Id", "id", "ID")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CanonicalizationConfig:
    """Opciones de canonicalización (method, inclusive_prefixes, with_comments)"""

    method: str = METHOD_INCLUSIVE
    inclusive_prefixes: Tuple[str, ...] = ()
    with_comments: bool = False

    def __post_init__(self):
        if self.method not in (METHOD_INCLUSIVE, METHOD_EXCLUSIVE):
            raise ConfigError("Método de canonicalización inválido", "method", self.method)

    @property
    def exclusive(self) -> bool:
        return self.method == METHOD_EXCLUSIVE

    @property
    def uri(self) -> str:
        if self.exclusive:
            return algorithms.C14N_EXCLUSIVE_WITH_COMMENTS if self.with_comments else algorithms.C14N_EXCLUSIVE
        return algorithms.C14N_INCLUSIVE_WITH_COMMENTS if self.with_comments else algorithms.C14N_INCLUSIVE


@dataclass(frozen=True)
class SigningConfig:
    """
    Configuración de firma.

    signature_algorithm_uri se deriva de digest_algorithm si no se informa;
    un par explícito incompatible (ej: sha256 + rsa-sha1) es un error.
    """

    digest_algorithm: str = "sha1"
    signature_algorithm_uri: Optional[str] = None
    canonicalization_uri: str = algorithms.C14N_INCLUSIVE
    include_certificate: bool = True
    id_attributes: Tuple[str, ...] = DEFAULT_ID_ATTRIBUTES
    min_key_size: int = 2048

    def __post_init__(self):
        if self.digest_algorithm not in algorithms.DIGEST_URIS:
            raise ConfigError("Algoritmo de digest no soportado", "digest_algorithm", self.digest_algorithm)
        if self.signature_algorithm_uri is None:
            object.__setattr__(self, "signature_algorithm_uri", algorithms.SIGNATURE_URIS[self.digest_algorithm])
        implied = algorithms.hash_name_from_signature_uri(self.signature_algorithm_uri)
        if implied != self.digest_algorithm:
            raise ConfigError(
                f"SignatureMethod no corresponde al digest {self.digest_algorithm}",
                "signature_algorithm_uri",
                self.signature_algorithm_uri,
            )
        if not self.id_attributes:
            raise ConfigError("Se requiere al menos un atributo de Id", "id_attributes", self.id_attributes)

    @classmethod
    def sha1(cls, **kwargs) -> "SigningConfig":
        return cls(digest_algorithm="sha1", **kwargs)

    @classmethod
    def sha256(cls, **kwargs) -> "SigningConfig":
        return cls(digest_algorithm="sha256", **kwargs)

    @property
    def digest_uri(self) -> str:
        return algorithms.DIGEST_URIS[self.digest_algorithm]


@dataclass(frozen=True)
class ValidationConfig:
    """Configuración de validación de firmas"""

    clock_skew: timedelta = timedelta(minutes=5)
    require_trusted_chain: bool = True
    allowed_signature_algorithms: Tuple[str, ...] = (
        algorithms.SIGNATURE_RSA_SHA1,
        algorithms.SIGNATURE_RSA_SHA256,
    )
    allowed_digest_algorithms: Tuple[str, ...] = (
        algorithms.DIGEST_SHA1,
        algorithms.DIGEST_SHA256,
    )
    id_attributes: Tuple[str, ...] = DEFAULT_ID_ATTRIBUTES
    clock: Callable[[], datetime] = field(default=utc_now, compare=False)


@dataclass(frozen=True)
class DSigConfig:
    signing: SigningConfig = field(default_factory=SigningConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    canonicalization: CanonicalizationConfig = field(default_factory=CanonicalizationConfig)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "si", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"{name} debe ser booleano", name, raw)


def get_dsig_config() -> DSigConfig:
    """
    Obtiene la configuración desde variables de entorno (y .env)

    Variables:
        NFE_DSIG_DIGEST: sha1 | sha256 (default sha1)
        NFE_DSIG_C14N: inclusive | exclusive (default inclusive)
        NFE_DSIG_INCLUDE_CERT: incluir X509Certificate en KeyInfo (default true)
        NFE_DSIG_CLOCK_SKEW_SECONDS: tolerancia de reloj (default 300)
        NFE_DSIG_REQUIRE_TRUST: exigir cadena ICP-Brasil al validar (default true)
        NFE_DSIG_ID_ATTRIBUTES: lista separada por comas (default Id,id,ID)

    Returns:
        DSigConfig

    Raises:
        ConfigError: si algún valor es inválido
    """
    digest = os.getenv("NFE_DSIG_DIGEST", "sha1").strip().lower()

    c14n_raw = os.getenv("NFE_DSIG_C14N", "inclusive").strip().lower()
    if c14n_raw == "inclusive":
        c14n = CanonicalizationConfig(method=METHOD_INCLUSIVE)
    elif c14n_raw == "exclusive":
        c14n = CanonicalizationConfig(method=METHOD_EXCLUSIVE)
    else:
        raise ConfigError("NFE_DSIG_C14N debe ser 'inclusive' o 'exclusive'", "NFE_DSIG_C14N", c14n_raw)

    id_raw = os.getenv("NFE_DSIG_ID_ATTRIBUTES", ",".join(DEFAULT_ID_ATTRIBUTES))
    id_attributes = tuple(a.strip() for a in id_raw.split(",") if a.strip())

    skew_raw = os.getenv("NFE_DSIG_CLOCK_SKEW_SECONDS", "300")
    try:
        skew = timedelta(seconds=int(skew_raw))
    except ValueError as e:
        raise ConfigError("NFE_DSIG_CLOCK_SKEW_SECONDS debe ser entero", "NFE_DSIG_CLOCK_SKEW_SECONDS", skew_raw) from e
    if skew < timedelta(0):
        raise ConfigError("NFE_DSIG_CLOCK_SKEW_SECONDS no puede ser negativo", "NFE_DSIG_CLOCK_SKEW_SECONDS", skew_raw)

    signing = SigningConfig(
        digest_algorithm=digest,
        canonicalization_uri=c14n.uri,
        include_certificate=_env_bool("NFE_DSIG_INCLUDE_CERT", True),
        id_attributes=id_attributes,
    )
    validation = ValidationConfig(
        clock_skew=skew,
        require_trusted_chain=_env_bool("NFE_DSIG_REQUIRE_TRUST", True),
        id_attributes=id_attributes,
    )
    return DSigConfig(signing=signing, validation=validation, canonicalization=c14n)
