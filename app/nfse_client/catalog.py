"""
Gateway del catálogo nacional (municipios, alícuotas, convenios)

Las consultas devuelven CatalogLookup; una caída remota nunca lanza
excepción: se usa cache expirado si existe, si no CatalogLookup(ok=False).
"""
import json
import logging
import re
from typing import Any, Callable, Dict, Optional

import httpx

from .cache import FileCacheStore
from .config import NfseConfig
from .models import CatalogLookup
from .transport import enforce_https

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_ENDPOINTS: Dict[str, str] = {
    "municipios": "/catalogos/municipios",
    "aliquotas_municipio": "/catalogos/municipios/{codigo_municipio}/aliquotas",
    "aliquota_servico": "/parametros_municipais/{codigo_municipio}/{codigo_servico}/{competencia}/aliquota",
    "convenio": "/parametros_municipais/{codigo_municipio}/convenio",
}

# http_get(path) -> dict | list | str (JSON)
HttpGet = Callable[[str], Any]


class CatalogGateway:
    """Consultas cacheadas al catálogo nacional"""

    def __init__(
        self,
        config: NfseConfig,
        cache: Optional[FileCacheStore] = None,
        http_get: Optional[HttpGet] = None,
    ):
        self.config = config
        self.cache = cache or FileCacheStore(config.cache_dir)
        self.ttl = config.cache_ttl
        self.http_get = http_get
        self.endpoints = {**DEFAULT_CATALOG_ENDPOINTS, **config.catalog_endpoints}

    def list_municipalities(self, force_refresh: bool = False) -> CatalogLookup:
        return self._fetch_with_cache("municipios", self._resolve_endpoint("municipios"), force_refresh)

    def get_aliquot_parametrization(
        self,
        codigo_municipio: str,
        codigo_servico: Optional[str] = None,
        competencia: Optional[str] = None,
        force_refresh: bool = False,
    ) -> CatalogLookup:
        """
        Parametrización de alícuotas del município.

        Con código de servicio y competencia consulta la alícuota específica;
        si no, la lista de alícuotas del município.

        Raises:
            ValueError: Código de município sin 7 dígitos
        """
        self._check_municipio(codigo_municipio)
        if codigo_servico and competencia:
            key = f"aliquota:{codigo_municipio}:{codigo_servico}:{competencia}"
            path = self._resolve_endpoint(
                "aliquota_servico",
                codigo_municipio=codigo_municipio,
                codigo_servico=codigo_servico,
                competencia=competencia,
            )
        else:
            key = f"aliquotas:{codigo_municipio}"
            path = self._resolve_endpoint(
                "aliquotas_municipio",
                codigo_municipio=codigo_municipio,
                ibge=codigo_municipio,
            )
        return self._fetch_with_cache(key, path, force_refresh)

    def get_municipal_agreement(self, codigo_municipio: str, force_refresh: bool = False) -> CatalogLookup:
        """Convênio do município com o sistema nacional"""
        self._check_municipio(codigo_municipio)
        return self._fetch_with_cache(
            f"convenio:{codigo_municipio}",
            self._resolve_endpoint("convenio", codigo_municipio=codigo_municipio),
            force_refresh,
        )

    @staticmethod
    def _check_municipio(codigo_municipio: str) -> None:
        if not re.fullmatch(r"\d{7}", str(codigo_municipio or "")):
            raise ValueError("Código do município deve conter 7 dígitos")

    def _resolve_endpoint(self, name: str, **params: Any) -> str:
        endpoint = str(self.endpoints.get(name) or "")
        if not endpoint:
            raise ValueError(f"Endpoint de catálogo '{name}' não configurado")
        for param, value in params.items():
            endpoint = endpoint.replace("{" + param + "}", str(value))
        return endpoint

    def _fetch_with_cache(self, key: str, path: str, force_refresh: bool) -> CatalogLookup:
        try:
            cached = self.cache.get(key)
        except OSError as e:
            logger.warning(f"Cache de catálogo inacessível ({key}): {e}")
            cached = None
        if not force_refresh and cached is not None and cached.is_fresh():
            return CatalogLookup(
                ok=True,
                data=cached.payload,
                metadata={"source": "cache", "stale": False, "cache_key": key},
            )

        try:
            payload = self._request_json(path)
        except Exception as e:
            if cached is not None:
                logger.warning(f"Catálogo remoto falló, usando cache expirado ({key}): {e}")
                return CatalogLookup(
                    ok=True,
                    data=cached.payload,
                    metadata={
                        "source": "cache",
                        "stale": True,
                        "cache_key": key,
                        "fallback_error": str(e),
                    },
                )
            logger.warning(f"Catálogo remoto indisponível ({key}): {e}")
            return CatalogLookup(
                ok=False,
                metadata={"source": "remote", "stale": False, "cache_key": key},
                error=f"Falha ao obter catálogo nacional: {e}",
            )

        data = payload.get("data", payload) if isinstance(payload, dict) else payload
        metadata = {"source": "remote", "stale": False, "cache_key": key}
        try:
            self.cache.put(key, data, self.ttl)
        except OSError as e:
            logger.warning(f"Não foi possível gravar o cache de catálogo ({key}): {e}")
            metadata["cache_error"] = str(e)
        return CatalogLookup(ok=True, data=data, metadata=metadata)

    def _request_json(self, path: str) -> Any:
        if self.http_get is not None:
            result = self.http_get(path)
            if isinstance(result, (bytes, str)):
                result = json.loads(result)
            if not isinstance(result, (dict, list)):
                raise ValueError("Cliente HTTP retornou payload inválido")
            return result

        if re.match(r"^https?://", path, re.IGNORECASE):
            url = enforce_https(path)
        else:
            url = enforce_https(self.config.catalog_base_url) + (path if path.startswith("/") else "/" + path)

        headers = {"Accept": "application/json", **self.config.auth_headers()}
        response = httpx.get(
            url,
            headers=headers,
            timeout=self.config.request_timeout,
            verify=self.config.ca_bundle_path or True,
        )
        response.raise_for_status()
        decoded = response.json()
        if not isinstance(decoded, (dict, list)):
            raise ValueError("Resposta JSON inválida do catálogo nacional")
        return decoded
