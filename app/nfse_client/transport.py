"""
Transporte HTTP para la API Sefin Nacional (NFSe)

- Resolución de operación -> path (defaults + overrides de config)
- Envelope: gzip + base64; "emitir" va en JSON {"dpsXmlGZipB64": ...}
- mTLS con requests: cert/key en archivos temporales eliminados siempre
- HTTPS forzado
- Trace de debug JSONL opcional (nunca interrumpe el flujo)
"""
import json
import logging
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urlsplit

import requests

from .certificates import CertificateBundle, temp_pem_files
from .config import NfseConfig
from .exceptions import NfseConfigError, NfseTransportError
from .xml_utils import decode_bytes, gzip_b64_encode

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINTS: Dict[str, str] = {
    "emitir": "/nfse/emitir",
    "consultar": "/nfse/consultar",
    "cancelar": "/nfse/cancelar",
    "substituir": "/nfse/substituir",
    "consultar_rps": "/nfse/consultar-rps",
    "consultar_lote": "/nfse/consultar-lote",
    "baixar_xml": "/nfse/download/xml",
    "baixar_danfse": "/nfse/download/danfse",
}

EMIT_OPERATION = "emitir"
EMIT_JSON_FIELD = "dpsXmlGZipB64"

JSON_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json",
}
XML_HEADERS = {
    "Content-Type": "application/xml",
    "Accept": "application/xml",
}

DEBUG_BODY_LIMIT = 2000

# http_client(method, path, body, headers) -> str
HttpClient = Callable[[str, str, Optional[str], Dict[str, str]], str]


def enforce_https(base_url: str) -> str:
    """
    Garantiza esquema https.

    http -> https (con warning); sin esquema -> https://; otros esquemas -> error.
    """
    url = (base_url or "").strip()
    if not url:
        raise NfseConfigError("URL base de la API no configurada")
    scheme = urlsplit(url).scheme.lower() if "://" in url else ""
    if scheme == "https":
        return url.rstrip("/")
    if scheme == "http":
        upgraded = "https://" + url.split("://", 1)[1]
        logger.warning(f"URL insegura actualizada a HTTPS: {url} -> {upgraded}")
        return upgraded.rstrip("/")
    if scheme == "":
        return ("https://" + url.lstrip("/")).rstrip("/")
    raise NfseConfigError(f"Esquema no soportado en URL base: {scheme}:// (solo https)")


def _truncate(value: Optional[str], limit: int = DEBUG_BODY_LIMIT) -> Optional[str]:
    if value is None:
        return None
    return value if len(value) <= limit else value[:limit] + "...[truncated]"


class TransportClient:
    """
    Cliente de transporte con mTLS.

    Si se inyecta http_client, se usa en lugar de requests (tests/mocks) y no
    se requiere certificado.
    """

    def __init__(
        self,
        config: NfseConfig,
        certificate: Optional[CertificateBundle] = None,
        http_client: Optional[HttpClient] = None,
    ):
        self.config = config
        self.certificate = certificate
        self.http_client = http_client

    def resolve_operation_path(self, operation: str, **params: str) -> str:
        """
        Path de la operación: override de config, luego default.

        Raises:
            NfseConfigError: Operación sin path configurado ni default
        """
        configured = self.config.endpoints.get(operation)
        path = str(configured if configured is not None else DEFAULT_ENDPOINTS.get(operation, ""))
        if not path:
            raise NfseConfigError(f"Endpoint da operação {operation} não configurado")
        for name, value in params.items():
            path = path.replace("{" + name + "}", str(value))
        return path if path.startswith("/") else "/" + path

    def encode_body(self, operation: str, xml: str) -> Tuple[str, Dict[str, str]]:
        """
        Codifica el body según la operación.

        Returns:
            (body, headers)
        """
        encoded = gzip_b64_encode(xml)
        if operation == EMIT_OPERATION:
            return json.dumps({EMIT_JSON_FIELD: encoded}), dict(JSON_HEADERS)
        return encoded, dict(XML_HEADERS)

    def send(self, operation: str, xml: str, method: str = "POST", **path_params: str) -> str:
        """
        Envía el XML codificado a la operación y devuelve el body crudo.

        Raises:
            NfseConfigError: Operación/URL inválida
            NfseTransportError: Error de red o status no-2xx
        """
        path = self.resolve_operation_path(operation, **path_params)
        body, headers = self.encode_body(operation, xml)
        headers.update(self.config.auth_headers())
        return self.request(method, path, body, headers, operation=operation)

    def request(
        self,
        method: str,
        path: str,
        body: Optional[str],
        headers: Dict[str, str],
        operation: Optional[str] = None,
    ) -> str:
        correlation_id = uuid.uuid4().hex
        operation = operation or path
        started = time.monotonic()
        status: Optional[int] = None
        response_body: Optional[str] = None
        error: Optional[str] = None

        logger.info(f"NFSe {method} {path} (operação={operation}, correlation_id={correlation_id})")
        try:
            if self.http_client is not None:
                response_body = self._call_injected(method, path, body, headers, operation, correlation_id)
                if not isinstance(response_body, str):
                    raise NfseTransportError(
                        "Cliente HTTP retornou payload inválido (esperado str)",
                        operation=operation,
                        correlation_id=correlation_id,
                    )
                status = 200
                return response_body

            status, response_body = self._request_mtls(method, path, body, headers, operation, correlation_id)
            if not 200 <= status < 300:
                raise NfseTransportError(
                    f"HTTP {status} na operação {operation}",
                    operation=operation,
                    correlation_id=correlation_id,
                    http_status=status,
                    body_excerpt=_truncate(response_body, 500),
                )
            return response_body
        except (NfseTransportError, NfseConfigError) as e:
            error = e.message
            raise
        finally:
            self._debug_trace(
                correlation_id=correlation_id,
                method=method,
                path=path,
                operation=operation,
                status=status,
                elapsed_ms=int((time.monotonic() - started) * 1000),
                request_body=body,
                response_body=response_body,
                error=error,
            )

    def _call_injected(
        self,
        method: str,
        path: str,
        body: Optional[str],
        headers: Dict[str, str],
        operation: str,
        correlation_id: str,
    ) -> Any:
        try:
            return self.http_client(method, path, body, headers)
        except (NfseTransportError, NfseConfigError):
            raise
        except Exception as e:
            raise NfseTransportError(
                f"Falha HTTP na operação {operation}: {e}",
                operation=operation,
                correlation_id=correlation_id,
            )

    def _request_mtls(
        self,
        method: str,
        path: str,
        body: Optional[str],
        headers: Dict[str, str],
        operation: str,
        correlation_id: str,
    ) -> Tuple[int, str]:
        if self.certificate is None:
            raise NfseTransportError(
                "Certificado digital obrigatório para mTLS",
                operation=operation,
                correlation_id=correlation_id,
            )

        url = enforce_https(self.config.api_base_url) + path
        verify: Any = self.config.ca_bundle_path or True

        with temp_pem_files(self.certificate) as (cert_path, key_path):
            session = requests.Session()
            try:
                session.cert = (cert_path, key_path)
                session.verify = verify
                response = session.request(
                    method,
                    url,
                    data=body.encode("utf-8") if body is not None else None,
                    headers=headers,
                    timeout=self.config.request_timeout,
                )
            except requests.exceptions.RequestException as e:
                raise NfseTransportError(
                    f"Falha HTTP na operação {operation}: {e}",
                    operation=operation,
                    correlation_id=correlation_id,
                )
            finally:
                session.close()

        content = response.content or b""
        # charset del header no es confiable (requests asume ISO-8859-1 en text/*)
        return response.status_code, decode_bytes(content)

    def _debug_trace(self, **entry: Any) -> None:
        if not self.config.debug_enabled:
            return
        entry["timestamp"] = datetime.now(timezone.utc).isoformat()
        entry["request_body"] = _truncate(entry.get("request_body"))
        entry["response_body"] = _truncate(entry.get("response_body"))
        try:
            log_path = Path(self.config.debug_log_path)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with log_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(entry, ensure_ascii=False) + "\n")
        except (OSError, TypeError, ValueError) as e:
            logger.warning(f"No se pudo escribir trace HTTP de debug: {e}")
