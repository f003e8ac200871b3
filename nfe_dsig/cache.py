"""
Cache de certificados (LRU + TTL) como servicio explícito

No hay estado global: el llamador crea el CertificateCache y lo pasa por
referencia. Cada get() entrega un CachedCertificate (lease con conteo de
referencias). El proveedor subyacente se cierra exactamente una vez: cuando
fue desalojado del cache y no quedan leases abiertos.
"""
import logging
import threading
import time
from collections import OrderedDict
from typing import Callable, Dict, List, Optional

from .certificate import CertificateProvider
from .exceptions import CertificateError, ClosedError, ConfigError

logger = logging.getLogger(__name__)


class _Entry:
    __slots__ = ("key", "provider", "created_at", "refs", "evicted", "closed")

    def __init__(self, key: str, provider: CertificateProvider, created_at: float):
        self.key = key
        self.provider = provider
        self.created_at = created_at
        self.refs = 0
        self.evicted = False
        self.closed = False


class CachedCertificate:
    """
    Lease sobre un proveedor cacheado. Usar como context manager o llamar
    release() al terminar; release() es idempotente.
    """

    def __init__(self, cache: "CertificateCache", entry: _Entry):
        self._cache = cache
        self._entry = entry
        self._released = False

    @property
    def key(self) -> str:
        return self._entry.key

    @property
    def provider(self) -> CertificateProvider:
        if self._released:
            raise ClosedError("Lease de certificado ya liberado", "key", self._entry.key)
        return self._entry.provider

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._cache._release(self._entry)

    def __enter__(self) -> CertificateProvider:
        return self.provider

    def __exit__(self, exc_type, exc, tb):
        self.release()


class CertificateCache:
    """
    Cache LRU + TTL de CertificateProvider.

    Args:
        max_size: cantidad máxima de entradas
        ttl_seconds: tiempo de vida de cada entrada
        on_evict: callback(key) invocado una vez por entrada desalojada
        clock: reloj monotónico (inyectable en tests)
    """

    def __init__(
        self,
        max_size: int = 10,
        ttl_seconds: float = 3600.0,
        on_evict: Optional[Callable[[str], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size < 1:
            raise ConfigError("max_size debe ser >= 1", "max_size", max_size)
        if ttl_seconds <= 0:
            raise ConfigError("ttl_seconds debe ser positivo", "ttl_seconds", ttl_seconds)
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._on_evict = on_evict
        self._clock = clock
        self._entries: "OrderedDict[str, _Entry]" = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def put(self, key: str, provider: CertificateProvider) -> None:
        """Agrega (o reemplaza) un proveedor; puede desalojar el menos usado"""
        to_close: List[_Entry] = []
        with self._lock:
            old = self._entries.pop(key, None)
            if old is not None:
                to_close.extend(self._evict(old))
            self._entries[key] = _Entry(key, provider, self._clock())
            while len(self._entries) > self.max_size:
                _k, lru = self._entries.popitem(last=False)
                to_close.extend(self._evict(lru))
        self._finish(to_close)

    def get(self, key: str) -> Optional[CachedCertificate]:
        """Lease sobre el proveedor, o None si no existe o expiró"""
        to_close: List[_Entry] = []
        lease = None
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and self._expired(entry):
                del self._entries[key]
                to_close.extend(self._evict(entry))
                entry = None
            if entry is None:
                self._misses += 1
            else:
                self._hits += 1
                self._entries.move_to_end(key)
                entry.refs += 1
                lease = CachedCertificate(self, entry)
        self._finish(to_close)
        return lease

    def remove(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.pop(key, None)
            to_close = self._evict(entry) if entry is not None else []
        self._finish(to_close)
        return entry is not None

    def clear(self) -> None:
        to_close: List[_Entry] = []
        with self._lock:
            for entry in self._entries.values():
                to_close.extend(self._evict(entry))
            self._entries.clear()
        self._finish(to_close)

    def purge_expired(self) -> int:
        to_close: List[_Entry] = []
        with self._lock:
            expired = [k for k, e in self._entries.items() if self._expired(e)]
            for k in expired:
                to_close.extend(self._evict(self._entries.pop(k)))
        self._finish(to_close)
        return len(expired)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "size": len(self._entries),
                "max_size": self.max_size,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "leased": sum(e.refs for e in self._entries.values()),
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not self._expired(entry)

    # --- internos (se llaman con el lock tomado, salvo _finish) ---

    def _expired(self, entry: _Entry) -> bool:
        return self._clock() - entry.created_at >= self.ttl_seconds

    def _evict(self, entry: _Entry) -> List[_Entry]:
        entry.evicted = True
        self._evictions += 1
        return [entry] if entry.refs == 0 else []

    def _release(self, entry: _Entry) -> None:
        with self._lock:
            entry.refs -= 1
            ready = entry.evicted and entry.refs == 0
        if ready:
            self._finish([entry])

    def _finish(self, entries: List[_Entry]) -> None:
        # Fuera del lock: close() del proveedor puede bloquear (token A3).
        # Una falla no interrumpe el cierre del resto; se informa la primera.
        first_error: Optional[CertificateError] = None
        for entry in entries:
            with self._lock:
                if entry.closed:
                    continue
                entry.closed = True
            try:
                entry.provider.close()
            except Exception as e:
                logger.error(f"Error al cerrar certificado desalojado {entry.key}: {type(e).__name__}")
                if first_error is None:
                    first_error = CertificateError(
                        f"Error al cerrar proveedor de certificado: {type(e).__name__}", "key", entry.key
                    )
            logger.debug(f"Certificado desalojado del cache: {entry.key}")
            if self._on_evict is not None:
                self._on_evict(entry.key)
        if first_error is not None:
            raise first_error from None
