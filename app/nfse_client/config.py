"""
Configuración para cliente NFSe Nacional (Sefin/ADN)

La configuración es un objeto explícito que se pasa a cada componente.
get_nfse_config() la arma desde variables de entorno (.env soportado).
"""
import json
import os
import tempfile
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from .exceptions import NfseConfigError

load_dotenv()

SIGNATURE_MODES = ("none", "optional", "required")


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_json(name: str) -> Dict[str, str]:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise NfseConfigError(f"{name} debe ser un objeto JSON: {e}")
    if not isinstance(data, dict):
        raise NfseConfigError(f"{name} debe ser un objeto JSON")
    return {str(k): str(v) for k, v in data.items()}


class NfseConfig:
    """Configuración del cliente NFSe Nacional por ambiente"""

    ENV_HOMOLOGACAO = "homologacao"
    ENV_PRODUCAO = "producao"

    # tpAmb según layout DPS: 1=Produção, 2=Homologação
    TP_AMB = {
        "producao": "1",
        "homologacao": "2",
    }

    # URLs base Sefin Nacional (API REST)
    BASE_URLS = {
        "producao": "https://sefin.nfse.gov.br/SefinNacional",
        "homologacao": "https://sefin.producaorestrita.nfse.gov.br/SefinNacional",
    }

    DEFAULT_NAMESPACE = "http://www.sped.fazenda.gov.br/nfse"
    DEFAULT_VER_APLIC = "nfse-minisender-1.0"

    def __init__(
        self,
        ambiente: str = ENV_HOMOLOGACAO,
        api_base_url: Optional[str] = None,
        catalog_base_url: Optional[str] = None,
        request_timeout: int = 30,
        signature_mode: str = "optional",
        endpoints: Optional[Dict[str, str]] = None,
        catalog_endpoints: Optional[Dict[str, str]] = None,
        cache_dir: Optional[str] = None,
        cache_ttl: int = 86400,
        debug: bool = False,
        debug_log_path: str = "artifacts/nfse_http_debug.jsonl",
        auth_token: Optional[str] = None,
        api_key: Optional[str] = None,
        xml_namespace: str = DEFAULT_NAMESPACE,
        dps_versao: str = "1.00",
        dps_root: bool = False,
        dps_send_paliq: bool = True,
        dps_require_im: bool = False,
        ver_aplic: str = DEFAULT_VER_APLIC,
        max_descricao_length: int = 2000,
        ca_bundle_path: Optional[str] = None,
        catalog_tolerance: float = 0.01,
    ):
        """
        Inicializa la configuración NFSe

        Args:
            ambiente: 'homologacao' o 'producao'
            api_base_url: URL base de la API (default según ambiente)
            signature_mode: 'none', 'optional' o 'required'
            endpoints: overrides de paths por operación
            dps_root: True = DPS como raíz; False = DPS envuelto en NFSe
        """
        if ambiente not in self.TP_AMB:
            raise NfseConfigError(
                f"Ambiente inválido: {ambiente}. Debe ser 'homologacao' o 'producao'"
            )
        if signature_mode not in SIGNATURE_MODES:
            raise NfseConfigError(
                f"signature_mode inválido: {signature_mode}. Válidos: {SIGNATURE_MODES}"
            )

        self.ambiente = ambiente
        self.api_base_url = (api_base_url or self.BASE_URLS[ambiente]).rstrip("/")
        self.catalog_base_url = (catalog_base_url or self.api_base_url).rstrip("/")

        timeout = int(request_timeout)
        self.request_timeout = timeout if timeout > 0 else 30

        self.signature_mode = signature_mode
        self.endpoints: Dict[str, str] = dict(endpoints or {})
        self.catalog_endpoints: Dict[str, str] = dict(catalog_endpoints or {})

        self.cache_dir = cache_dir or os.path.join(tempfile.gettempdir(), "nfse-catalog-cache")
        self.cache_ttl = int(cache_ttl)

        self.debug = debug
        self.debug_log_path = debug_log_path

        # Autenticación adicional a mTLS
        self.auth_token = auth_token
        self.api_key = api_key

        # Layout DPS
        self.xml_namespace = xml_namespace
        self.dps_versao = dps_versao
        self.dps_root = dps_root
        self.dps_send_paliq = dps_send_paliq
        self.dps_require_im = dps_require_im
        self.ver_aplic = (ver_aplic or self.DEFAULT_VER_APLIC)[:20]
        self.max_descricao_length = int(max_descricao_length)

        self.ca_bundle_path = ca_bundle_path
        self.catalog_tolerance = float(catalog_tolerance)

    @property
    def tp_amb(self) -> str:
        """tpAmb correspondiente al ambiente configurado"""
        return self.TP_AMB[self.ambiente]

    @property
    def wrapping_mode(self) -> str:
        return "standalone" if self.dps_root else "wrapped"

    @property
    def debug_enabled(self) -> bool:
        """Debug HTTP habilitado por config o por NFSE_DEBUG_HTTP"""
        return bool(self.debug) or os.getenv("NFSE_DEBUG_HTTP", "0") in ("1", "true", "True")

    def auth_headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return headers

    def as_dict(self) -> Dict[str, Any]:
        """Vista sin secretos (para logs/meta)"""
        return {
            "ambiente": self.ambiente,
            "api_base_url": self.api_base_url,
            "catalog_base_url": self.catalog_base_url,
            "request_timeout": self.request_timeout,
            "signature_mode": self.signature_mode,
            "wrapping_mode": self.wrapping_mode,
            "dps_versao": self.dps_versao,
            "ver_aplic": self.ver_aplic,
            "debug": self.debug_enabled,
        }


def get_nfse_config(env: Optional[str] = None) -> NfseConfig:
    """
    Obtiene la configuración NFSe desde variables de entorno

    Args:
        env: Ambiente ('homologacao' o 'producao'). Si None, usa NFSE_ENV

    Returns:
        Configuración NFSe
    """
    if env is None:
        env = os.getenv("NFSE_ENV", NfseConfig.ENV_HOMOLOGACAO)

    env = env.strip().lower()
    default_base = {
        NfseConfig.ENV_PRODUCAO: os.getenv("NFSE_PROD_BASE_URL", NfseConfig.BASE_URLS["producao"]),
        NfseConfig.ENV_HOMOLOGACAO: os.getenv("NFSE_TEST_BASE_URL", NfseConfig.BASE_URLS["homologacao"]),
    }.get(env)

    return NfseConfig(
        ambiente=env,
        api_base_url=os.getenv("NFSE_API_BASE_URL") or default_base,
        catalog_base_url=os.getenv("NFSE_CATALOG_BASE_URL") or None,
        request_timeout=int(os.getenv("NFSE_REQUEST_TIMEOUT", "30")),
        signature_mode=os.getenv("NFSE_SIGNATURE_MODE", "optional").strip().lower(),
        endpoints=_env_json("NFSE_ENDPOINTS"),
        catalog_endpoints=_env_json("NFSE_CATALOG_ENDPOINTS"),
        cache_dir=os.getenv("NFSE_CACHE_DIR") or None,
        cache_ttl=int(os.getenv("NFSE_CACHE_TTL", "86400")),
        debug=_env_bool("NFSE_DEBUG_HTTP"),
        debug_log_path=os.getenv("NFSE_DEBUG_LOG_PATH", "artifacts/nfse_http_debug.jsonl"),
        auth_token=os.getenv("NFSE_AUTH_TOKEN") or None,
        api_key=os.getenv("NFSE_API_KEY") or None,
        xml_namespace=os.getenv("NFSE_XML_NAMESPACE", NfseConfig.DEFAULT_NAMESPACE),
        dps_versao=os.getenv("NFSE_DPS_VERSAO", "1.00"),
        dps_root=_env_bool("NFSE_DPS_ROOT"),
        dps_send_paliq=_env_bool("NFSE_DPS_SEND_PALIQ", True),
        dps_require_im=_env_bool("NFSE_DPS_REQUIRE_IM"),
        ver_aplic=os.getenv("NFSE_VER_APLIC", NfseConfig.DEFAULT_VER_APLIC),
        max_descricao_length=int(os.getenv("NFSE_MAX_DESCRICAO", "2000")),
        ca_bundle_path=os.getenv("NFSE_CA_BUNDLE_PATH") or None,
        catalog_tolerance=float(os.getenv("NFSE_CATALOG_TOLERANCE", "0.01")),
    )
