"""
Utilidades DPS: identificador, normalización de códigos y alícuotas

Id DPS (45 caracteres):
    "DPS" + cLocEmi(7) + tpInsc(1) + inscrição federal(14) + série(5) + nDPS(15)

tpInsc: 1 = CPF, 2 = CNPJ
"""
import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

DPS_ID_PREFIX = "DPS"
NFSE_ID_PREFIX = "NFS"

TP_INSC_CPF = "1"
TP_INSC_CNPJ = "2"

DEFAULT_SUBITEM = "01"
MAX_ALIQUOTA_PERCENT = Decimal("5")


def only_digits(value: Any) -> str:
    """Deja solo dígitos (acepta str, bytes, int o None)"""
    if value is None:
        return ""
    if isinstance(value, bytes):
        value = value.decode("latin-1")
    return re.sub(r"\D", "", str(value))


def fit_digits(value: Any, width: int) -> str:
    """
    Ajusta a un ancho fijo: zero-pad a la izquierda o trunca a la derecha
    (se conservan los últimos `width` dígitos).
    """
    digits = only_digits(value)
    if len(digits) > width:
        return digits[-width:]
    return digits.zfill(width)


def tp_insc_for(documento: Any) -> str:
    """11 dígitos = CPF (1), cualquier otro = CNPJ (2)"""
    return TP_INSC_CPF if len(only_digits(documento)) == 11 else TP_INSC_CNPJ


def build_dps_numeric_part(
    c_loc_emi: Any,
    documento: Any,
    serie: Any,
    n_dps: Any,
) -> str:
    """Parte numérica (42 dígitos) compartida por Id DPS e Id infNFSe"""
    return (
        fit_digits(c_loc_emi, 7)
        + tp_insc_for(documento)
        + fit_digits(documento, 14)
        + fit_digits(serie, 5)
        + fit_digits(n_dps, 15)
    )


def build_dps_identifier(c_loc_emi: Any, documento: Any, serie: Any, n_dps: Any) -> str:
    """
    Calcula el Id del infDPS.

    Determinístico: mismos (local, emitente, série, número) => mismo Id.

    Examples:
        >>> build_dps_identifier("3550308", "12345678000199", "1", "42")
        'DPS355030821234567800019900001000000000000042'
    """
    return DPS_ID_PREFIX + build_dps_numeric_part(c_loc_emi, documento, serie, n_dps)


def build_nfse_envelope_identifier(c_loc_emi: Any, documento: Any, serie: Any, n_dps: Any) -> str:
    """Id del infNFSe cuando el DPS va envuelto en NFSe"""
    return NFSE_ID_PREFIX + build_dps_numeric_part(c_loc_emi, documento, serie, n_dps)


def normalize_ctribnac(value: Any) -> str:
    """
    Normaliza cTribNac a 6 dígitos.

    - 6 dígitos: sin cambios
    - 3 o 4 dígitos (item.subitem sin desdobramento): zfill(4) + "01"
      ("107" -> "010701", "1705" -> "170501")
    - otro largo: zero-pad/trunca a 6
    """
    digits = only_digits(value)
    if len(digits) == 6:
        return digits
    if len(digits) in (3, 4):
        return digits.zfill(4) + DEFAULT_SUBITEM
    if len(digits) > 6:
        return digits[:6]
    return digits.zfill(6)


def to_decimal(value: Any) -> Optional[Decimal]:
    """Decimal desde str/int/float/Decimal; acepta coma decimal. None si no es numérico"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, bytes):
        value = value.decode("latin-1")
    text = str(value).strip()
    if not text:
        return None
    if "," in text and "." in text:
        text = text.replace(".", "").replace(",", ".")
    elif "," in text:
        text = text.replace(",", ".")
    try:
        result = Decimal(text)
    except InvalidOperation:
        return None
    if not result.is_finite():
        return None
    return result


def normalize_aliquota(value: Any) -> Optional[Decimal]:
    """
    Normaliza alícuota a porcentaje.

    (0, 1] se interpreta como fracción (x100); > 1 ya es porcentaje.
    En el borde, 1 => 100 (y luego falla el tope de 5%).
    """
    aliq = to_decimal(value)
    if aliq is None:
        return None
    if Decimal("0") < aliq <= Decimal("1"):
        return aliq * 100
    return aliq


def format_decimal(value: Any, places: int = 2) -> str:
    """Formatea con punto decimal y `places` decimales (ROUND_HALF_UP)"""
    dec = to_decimal(value)
    if dec is None:
        dec = Decimal("0")
    quant = Decimal(1).scaleb(-places)
    return str(dec.quantize(quant, rounding=ROUND_HALF_UP))
