"""
Validador de payloads DPS (NFSe Nacional)

Reúne todos los errores (no falla en el primero). Las discrepancias contra el
catálogo nacional siempre quedan como warnings.
"""
import logging
import re
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Union

from .config import NfseConfig
from .dps_utils import (
    MAX_ALIQUOTA_PERCENT,
    normalize_aliquota,
    normalize_ctribnac,
    only_digits,
    to_decimal,
)
from .exceptions import NfseEncodingError
from .models import DpsRequest, ValidationOutcome
from .xml_utils import normalize_text

logger = logging.getLogger(__name__)

TP_AMB_VALUES = ("1", "2")
TP_EMIT_VALUES = ("1", "2", "3")
TP_EMIT_SUPPORTED = ("1",)
OP_SIMP_NAC_VALUES = ("1", "2", "3")
REG_ESP_TRIB_VALUES = ("0", "1", "2", "3", "4", "5", "6")

# tribISSQN: 1=Operação tributável, 2=Imunidade, 3=Exportação, 4=Não incidência
TRIB_ISSQN_TRIBUTAVEL = "1"
TRIB_ISSQN_VALUES = ("1", "2", "3", "4")
# tpRetISSQN: 1=Não retido, 2=Retido pelo tomador, 3=Retido pelo intermediário
TP_RET_NAO_RETIDO = "1"
TP_RET_ISSQN_VALUES = ("1", "2", "3")

SERIE_TP_EMIT_1 = (900, 999)

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
# segundos y fracción opcionales; fuso obligatorio
_DATETIME_RE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2})(?::(\d{2})(?:\.(\d+))?)?(Z|([+-])(\d{2}):(\d{2}))$"
)
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return normalize_text(value).strip()
    return str(value).strip()


def _pct(value: Decimal) -> str:
    return format(value.normalize(), "f")


def parse_competencia(value: Any) -> Optional[date]:
    """dCompet en formato YYYY-MM-DD (None si inválido)"""
    text = _as_str(value)
    if not _DATE_RE.match(text):
        return None
    try:
        return date.fromisoformat(text)
    except ValueError:
        return None


def parse_dh_emi(value: Any) -> Optional[datetime]:
    """
    dhEmi ISO-8601 con 'Z' u offset explícito (None si inválido).

    Acepta 2026-02-14T10:00Z, 2026-02-14T10:00:00.5-03:00, etc. La fracción
    se trunca a microsegundos.
    """
    match = _DATETIME_RE.match(_as_str(value))
    if not match:
        return None
    year, month, day, hour, minute, second, fraction, zone, sign, off_h, off_m = match.groups()
    if zone == "Z":
        tz = timezone.utc
    else:
        offset = timedelta(hours=int(off_h), minutes=int(off_m))
        if offset >= timedelta(hours=24):
            return None
        tz = timezone(-offset if sign == "-" else offset)
    try:
        return datetime(
            int(year), int(month), int(day), int(hour), int(minute), int(second or 0),
            int((fraction or "").ljust(6, "0")[:6]),
            tzinfo=tz,
        )
    except ValueError:
        return None


class DpsValidator:
    """
    Validación estructural y de reglas de negocio del DPS.

    El gateway de catálogo es opcional; solo se consulta en validate_against_catalog().
    """

    def __init__(self, config: Optional[NfseConfig] = None, catalog: Any = None):
        self.config = config or NfseConfig()
        self.catalog = catalog

    def validate(self, request: Union[DpsRequest, Mapping[str, Any]]) -> ValidationOutcome:
        """
        Valida el request sin consultar el catálogo.

        Returns:
            ValidationOutcome con todos los errores/warnings encontrados
        """
        if not isinstance(request, DpsRequest):
            request = DpsRequest.from_dict(request)

        errors: List[str] = []
        warnings: List[str] = []

        self._check_required(request, errors)
        self._check_dates(request, errors)
        self._check_identificacao(request, errors, warnings)
        self._check_prestador(request, errors)
        self._check_tomador(request, errors)
        self._check_servico(request, errors, warnings)
        self._check_tributacao(request, errors)

        if errors:
            logger.debug(f"DPS inválido ({len(errors)} errores): {errors}")
        return ValidationOutcome(valid=not errors, errors=errors, warnings=warnings)

    def validate_against_catalog(
        self,
        request: Union[DpsRequest, Mapping[str, Any]],
        check_catalog: bool = True,
    ) -> ValidationOutcome:
        """
        Lint previo al envío: validate() + cruce best-effort con el catálogo nacional.

        Cualquier problema con el catálogo (caída, ausencia de datos, alícuota
        distinta) se reporta como warning.
        """
        if not isinstance(request, DpsRequest):
            request = DpsRequest.from_dict(request)

        outcome = self.validate(request)
        if not check_catalog:
            return outcome

        if self.catalog is None:
            outcome.warnings.append("Catálogo nacional não configurado; verificação de alíquota ignorada")
            return outcome

        codigo_municipio = only_digits(request.local_prestacao)
        codigo_servico = normalize_ctribnac(request.servico.c_trib_nac) if request.servico.c_trib_nac else None
        competencia = _as_str(request.d_compet) or None

        if len(codigo_municipio) != 7:
            outcome.warnings.append("Catálogo não consultado: código do município inválido")
            return outcome

        lookup = self.catalog.get_aliquot_parametrization(
            codigo_municipio, codigo_servico, competencia
        )
        summary: Dict[str, Any] = {
            "codigoMunicipio": codigo_municipio,
            "codigoServico": codigo_servico,
            "competencia": competencia,
            "source": lookup.metadata.get("source"),
            "stale": lookup.metadata.get("stale", False),
            "aliquotaCatalogo": None,
        }
        outcome.catalog_summary = summary

        if not lookup.ok:
            outcome.warnings.append(
                f"Catálogo nacional indisponível para o município {codigo_municipio}: {lookup.error}"
            )
            return outcome
        if lookup.metadata.get("stale"):
            outcome.warnings.append("Parametrização do catálogo obtida de cache expirado")
        if lookup.metadata.get("cache_error"):
            outcome.warnings.append(f"Cache do catálogo não gravado: {lookup.metadata['cache_error']}")

        catalog_rate = extract_catalog_aliquota(lookup.data, codigo_servico)
        if catalog_rate is None:
            outcome.warnings.append(
                f"Catálogo sem alíquota para município {codigo_municipio} / serviço {codigo_servico}"
            )
            return outcome

        summary["aliquotaCatalogo"] = float(catalog_rate)
        informed = normalize_aliquota(request.servico.aliquota)
        if informed is None:
            return outcome

        tolerance = Decimal(str(self.config.catalog_tolerance))
        if abs(informed - catalog_rate) > tolerance:
            outcome.warnings.append(
                f"Alíquota informada ({_pct(informed)}%) difere da parametrização "
                f"municipal ({_pct(catalog_rate)}%)"
            )
        return outcome

    def _check_required(self, request: DpsRequest, errors: List[str]) -> None:
        required = {
            "dCompet": request.d_compet,
            "dhEmi": request.dh_emi,
            "serie": request.serie,
            "nDPS": request.n_dps,
            "prestador.cnpj": request.prestador.documento,
            "prestador.codigoMunicipio": request.prestador.codigo_municipio,
            "tomador.documento": request.tomador.documento,
            "tomador.razaoSocial": request.tomador.razao_social,
            "servico.cTribNac": request.servico.c_trib_nac,
            "servico.descricao": request.servico.descricao,
            "servico.tribISSQN": request.servico.trib_issqn,
            "servico.tpRetISSQN": request.servico.tp_ret_issqn,
            "valor_servicos": request.valor_servicos,
        }
        for name, value in required.items():
            if value is None:
                errors.append(f"Campo obrigatório ausente: {name}")

    def _check_dates(self, request: DpsRequest, errors: List[str]) -> None:
        competencia = None
        emissao = None
        if request.d_compet is not None:
            competencia = parse_competencia(request.d_compet)
            if competencia is None:
                errors.append("dCompet deve estar no formato YYYY-MM-DD")
        if request.dh_emi is not None:
            emissao = parse_dh_emi(request.dh_emi)
            if emissao is None:
                errors.append("dhEmi deve ser ISO-8601 com fuso (ex: 2026-02-14T10:00:00Z ou -03:00)")

        if competencia and emissao and competencia > emissao.date():
            errors.append(
                f"dCompet ({competencia.isoformat()}) não pode ser posterior à data de emissão "
                f"({emissao.date().isoformat()})"
            )

    def _check_identificacao(self, request: DpsRequest, errors: List[str], warnings: List[str]) -> None:
        if request.tp_amb is not None and _as_str(request.tp_amb) not in TP_AMB_VALUES:
            errors.append("tpAmb inválido: use 1 (Produção) ou 2 (Homologação)")

        tp_emit = _as_str(request.tp_emit) or "1"
        if tp_emit not in TP_EMIT_VALUES:
            errors.append("tpEmit inválido: use 1, 2 ou 3")
        elif tp_emit not in TP_EMIT_SUPPORTED:
            errors.append(f"tpEmit={tp_emit} não suportado: apenas 1 (prestador) é permitido")

        if request.serie is not None:
            serie = _as_str(request.serie)
            if not re.fullmatch(r"\d{1,5}", serie):
                errors.append("serie deve ser numérica com 1 a 5 dígitos")
            elif tp_emit == "1" and not (SERIE_TP_EMIT_1[0] <= int(serie) <= SERIE_TP_EMIT_1[1]):
                warnings.append(f"serie {serie} fora da faixa 900-999 recomendada para tpEmit=1")

        if request.n_dps is not None and not re.fullmatch(r"\d{1,15}", _as_str(request.n_dps)):
            errors.append("nDPS deve ser numérico com 1 a 15 dígitos")

        if request.local_emissao is not None and len(only_digits(request.local_emissao)) != 7:
            errors.append("cLocEmi deve conter 7 dígitos (código IBGE)")

    def _check_prestador(self, request: DpsRequest, errors: List[str]) -> None:
        prestador = request.prestador
        if prestador.cnpj is not None and len(only_digits(prestador.cnpj)) != 14:
            errors.append("CNPJ do prestador inválido (14 dígitos)")
        elif prestador.cnpj is None and prestador.cpf is not None and len(only_digits(prestador.cpf)) != 11:
            errors.append("CPF do prestador inválido (11 dígitos)")

        if prestador.codigo_municipio is not None and len(only_digits(prestador.codigo_municipio)) != 7:
            errors.append("prestador.codigoMunicipio deve conter 7 dígitos")

        if prestador.op_simp_nac is not None and _as_str(prestador.op_simp_nac) not in OP_SIMP_NAC_VALUES:
            errors.append("opSimpNac inválido: use 1, 2 ou 3")
        if prestador.reg_esp_trib is not None and _as_str(prestador.reg_esp_trib) not in REG_ESP_TRIB_VALUES:
            errors.append("regEspTrib inválido: use 0 a 6")

    def _check_tomador(self, request: DpsRequest, errors: List[str]) -> None:
        tomador = request.tomador
        if tomador.documento is not None and len(only_digits(tomador.documento)) not in (11, 14):
            errors.append("Documento do tomador deve ser CPF (11) ou CNPJ (14)")
        if tomador.email is not None and not _EMAIL_RE.match(_as_str(tomador.email)):
            errors.append("E-mail do tomador inválido")

    def _check_servico(self, request: DpsRequest, errors: List[str], warnings: List[str]) -> None:
        servico = request.servico
        if servico.c_trib_nac is not None:
            digits = only_digits(servico.c_trib_nac)
            if not digits:
                errors.append("cTribNac deve conter dígitos")
            else:
                if len(digits) not in (3, 4, 6):
                    warnings.append(f"cTribNac '{digits}' ajustado para {normalize_ctribnac(digits)}")
                if len(normalize_ctribnac(digits)) != 6:
                    errors.append("cTribNac deve conter 6 dígitos")

        if servico.c_loc_prestacao is not None and len(only_digits(servico.c_loc_prestacao)) != 7:
            errors.append("cLocPrestacao deve conter 7 dígitos (código IBGE)")

        if servico.descricao is not None:
            try:
                descricao = normalize_text(servico.descricao).strip()
            except NfseEncodingError as e:
                errors.append(f"Descrição do serviço com codificação inválida: {e.message}")
            else:
                if not descricao:
                    errors.append("Campo obrigatório ausente: servico.descricao")
                elif len(descricao) > self.config.max_descricao_length:
                    errors.append(
                        f"Descrição do serviço excede {self.config.max_descricao_length} caracteres"
                    )

        if request.valor_servicos is not None:
            valor = to_decimal(request.valor_servicos)
            if valor is None or valor <= 0:
                errors.append("Valor de serviços deve ser maior que zero")

    def _check_tributacao(self, request: DpsRequest, errors: List[str]) -> None:
        servico = request.servico
        trib = _as_str(servico.trib_issqn) if servico.trib_issqn is not None else None
        tp_ret = _as_str(servico.tp_ret_issqn) if servico.tp_ret_issqn is not None else None

        if trib is not None and trib not in TRIB_ISSQN_VALUES:
            errors.append("tribISSQN inválido: use 1, 2, 3 ou 4")
            trib = None
        if tp_ret is not None and tp_ret not in TP_RET_ISSQN_VALUES:
            errors.append("tpRetISSQN inválido: use 1, 2 ou 3")
            tp_ret = None

        if trib is not None and trib != TRIB_ISSQN_TRIBUTAVEL and tp_ret not in (None, TP_RET_NAO_RETIDO):
            errors.append(f"tpRetISSQN={tp_ret} incompatível com tribISSQN={trib}: use 1 (não retido)")

        if trib == TRIB_ISSQN_TRIBUTAVEL:
            if servico.aliquota is None:
                errors.append("Campo obrigatório ausente: servico.aliquota (tribISSQN=1)")
                return
            aliquota = normalize_aliquota(servico.aliquota)
            if aliquota is None or aliquota <= 0:
                errors.append("Alíquota deve ser maior que zero quando tribISSQN=1")
            elif aliquota > MAX_ALIQUOTA_PERCENT:
                errors.append(
                    f"Alíquota {_pct(aliquota)}% excede o teto de {MAX_ALIQUOTA_PERCENT}%"
                )
        elif trib is not None and servico.aliquota is not None:
            errors.append(f"Alíquota não deve ser informada quando tribISSQN={trib}")


def extract_catalog_aliquota(data: Any, codigo_servico: Optional[str] = None) -> Optional[Decimal]:
    """
    Extrae la alícuota (en %) de la respuesta del catálogo.

    Acepta: {"aliquota": x}, {"aliq": x}, listas de parametrizaciones con
    código de servicio, o un número suelto.
    """
    if data is None:
        return None
    if isinstance(data, (int, float, str, Decimal)) and not isinstance(data, bool):
        return normalize_aliquota(data)
    if isinstance(data, Mapping):
        for key in ("aliquota", "aliq", "pAliq", "Aliquota"):
            if key in data and data[key] is not None:
                return normalize_aliquota(data[key])
        for key in ("aliquotas", "parametrizacoes", "servicos"):
            if key in data:
                return extract_catalog_aliquota(data[key], codigo_servico)
        return None
    if isinstance(data, list):
        fallback = None
        for item in data:
            if not isinstance(item, Mapping):
                continue
            codigo = only_digits(item.get("codigoServico") or item.get("cTribNac") or item.get("codigo"))
            rate = extract_catalog_aliquota(
                {k: v for k, v in item.items() if k not in ("aliquotas", "parametrizacoes", "servicos")}
            )
            if rate is None:
                continue
            if codigo_servico and codigo and normalize_ctribnac(codigo) == codigo_servico:
                return rate
            if fallback is None and not codigo:
                fallback = rate
        return fallback
    return None
