"""
Cache en disco para el catálogo nacional

Un archivo JSON por clave (sha1(key).json) con {key, fetched_at, ttl, payload}.
Escritura atómica (archivo temporal + os.replace): lecturas concurrentes nunca
ven un archivo a medio escribir, y dos fetch simultáneos de la misma clave
solo producen una sobrescritura idempotente.
"""
import hashlib
import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Optional

from .models import CatalogCacheEntry

logger = logging.getLogger(__name__)


class FileCacheStore:
    def __init__(self, cache_dir: str):
        self.cache_dir = Path(cache_dir)

    def _path_for(self, key: str) -> Path:
        return self.cache_dir / f"{hashlib.sha1(key.encode('utf-8')).hexdigest()}.json"

    def get(self, key: str) -> Optional[CatalogCacheEntry]:
        """Entrada cacheada (fresca o no) o None si no existe / está corrupta"""
        path = self._path_for(key)
        try:
            if not path.is_file():
                return None
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Cache ilegible para '{key}': {e}")
            return None
        if not isinstance(raw, dict) or "fetched_at" not in raw or "payload" not in raw:
            return None
        try:
            return CatalogCacheEntry(
                key=str(raw.get("key", key)),
                payload=raw["payload"],
                fetched_at=float(raw["fetched_at"]),
                ttl=int(raw.get("ttl", 0)),
            )
        except (TypeError, ValueError):
            return None

    def put(self, key: str, payload: Any, ttl: int) -> CatalogCacheEntry:
        entry = CatalogCacheEntry(key=key, payload=payload, fetched_at=time.time(), ttl=int(ttl))
        data = json.dumps(
            {"key": entry.key, "fetched_at": entry.fetched_at, "ttl": entry.ttl, "payload": entry.payload},
            ensure_ascii=False,
            indent=2,
        )
        path = self._path_for(key)
        # el directorio se crea recién al primer guardado
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.cache_dir), prefix=".tmp_", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(data)
            os.replace(tmp_path, path)
        except OSError:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
        logger.debug(f"Cache actualizado: {key} -> {path.name}")
        return entry
