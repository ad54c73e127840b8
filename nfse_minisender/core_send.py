from __future__ import annotations

import logging
import traceback
from typing import Any, Mapping, Optional

from app.nfse_client.client import NfseNacionalClient
from app.nfse_client.config import NfseConfig, get_nfse_config
from app.nfse_client.exceptions import NfseException, NfseValidationError
from app.nfse_client.models import DpsRequest, TransmissionResult

logger = logging.getLogger(__name__)


def _envelope(
    *,
    ambiente: Optional[str],
    result: Optional[TransmissionResult] = None,
    message: Optional[str] = None,
    id_dps: Optional[str] = None,
    errors: Optional[list] = None,
    warnings: Optional[list] = None,
    error_type: Optional[str] = None,
    correlation_id: Optional[str] = None,
    tb: Optional[str] = None,
) -> dict:
    success = bool(result.success) if result is not None else False
    meta = {
        "ambiente": ambiente,
        "error_type": error_type,
        "correlation_id": correlation_id,
    }
    if tb:
        meta["traceback"] = tb
    return {
        "ok": success,
        "success": success,
        "message": result.message if result is not None else message,
        "numero": result.numero if result is not None else None,
        "codigoVerificacao": result.codigo_verificacao if result is not None else None,
        "protocolo": result.protocolo if result is not None else None,
        "chaveAcesso": result.chave_acesso if result is not None else None,
        "idDps": id_dps,
        "errors": list(errors or []),
        "warnings": list(warnings or []),
        "meta": meta,
    }


def send_dps(
    payload: Mapping[str, Any],
    *,
    config: Optional[NfseConfig] = None,
    env: Optional[str] = None,
    certificate_provider: Any = None,
    http_client: Any = None,
    check_catalog: bool = False,
) -> dict:
    """
    Core importable para emisión de un DPS: valida, construye, firma, envía y
    devuelve un dict plano. No lanza excepciones por errores de validación,
    firma o transporte.
    """
    try:
        config = config or get_nfse_config(env)
    except NfseException as exc:
        return _envelope(ambiente=env, message=exc.message, error_type=type(exc).__name__)

    id_dps = None
    try:
        client = NfseNacionalClient(
            config=config,
            certificate_provider=certificate_provider,
            http_client=http_client,
        )
        request = DpsRequest.from_dict(payload)
        outcome = client.lint(request, check_catalog=check_catalog)
        id_dps = client.builder.identifier_for(request) if outcome.valid else None
        if not outcome.valid:
            return _envelope(
                ambiente=config.ambiente,
                message=NfseValidationError(outcome.errors).message,
                errors=outcome.errors,
                warnings=outcome.warnings,
                error_type="NfseValidationError",
            )

        result = client.emitir(request)
    except NfseException as exc:
        logger.warning(f"send_dps falló: {type(exc).__name__}: {exc.message}")
        return _envelope(
            ambiente=config.ambiente,
            message=exc.message,
            errors=getattr(exc, "errors", None) or [exc.message],
            warnings=getattr(exc, "warnings", None),
            id_dps=id_dps,
            error_type=type(exc).__name__,
            correlation_id=getattr(exc, "correlation_id", None),
        )
    except Exception as exc:
        logger.exception("send_dps: error inesperado")
        return _envelope(
            ambiente=config.ambiente,
            message=str(exc),
            id_dps=id_dps,
            errors=[str(exc)],
            error_type=type(exc).__name__,
            tb=traceback.format_exc(),
        )

    return _envelope(
        ambiente=config.ambiente,
        result=result,
        id_dps=id_dps,
        errors=[] if result.success else [result.message],
        warnings=outcome.warnings,
    )
