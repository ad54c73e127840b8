"""
Modelos de datos para NFSe Nacional (DPS)
"""
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

Text = Union[str, bytes]


def _text(value: Any) -> Optional[Text]:
    """Valor textual o None si está ausente/vacío. bytes se preservan para normalizar después."""
    if value is None:
        return None
    if isinstance(value, bytes):
        return value if value.strip() else None
    text = str(value).strip()
    return text or None


def _raw(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str) and not value.strip():
        return None
    return value


@dataclass(frozen=True)
class Prestador:
    """Emitente/prestador de serviço"""
    cnpj: Optional[Text] = None
    cpf: Optional[Text] = None
    inscricao_municipal: Optional[Text] = None
    razao_social: Optional[Text] = None
    codigo_municipio: Optional[Text] = None
    op_simp_nac: Optional[Text] = None
    reg_esp_trib: Optional[Text] = None

    @property
    def documento(self) -> Optional[Text]:
        return self.cnpj or self.cpf


@dataclass(frozen=True)
class Tomador:
    documento: Optional[Text] = None
    razao_social: Optional[Text] = None
    email: Optional[Text] = None
    telefone: Optional[Text] = None


@dataclass(frozen=True)
class Servico:
    c_trib_nac: Optional[Text] = None
    c_loc_prestacao: Optional[Text] = None
    descricao: Optional[Text] = None
    trib_issqn: Optional[Text] = None
    tp_ret_issqn: Optional[Text] = None
    aliquota: Any = None


@dataclass(frozen=True)
class DpsRequest:
    """
    Pedido de emissão DPS tipado.

    Mantiene los nombres de wire del payload (tpAmb, dCompet, etc.) en from_dict()
    para compatibilidad de wire; campos ausentes quedan en None.
    """
    prestador: Prestador
    tomador: Tomador
    servico: Servico
    valor_servicos: Any = None
    tp_amb: Optional[Text] = None
    tp_emit: Optional[Text] = None
    serie: Optional[Text] = None
    n_dps: Optional[Text] = None
    d_compet: Optional[Text] = None
    dh_emi: Optional[Text] = None
    c_loc_emi: Optional[Text] = None
    ver_aplic: Optional[Text] = None

    @property
    def local_emissao(self) -> Optional[Text]:
        """cLocEmi explícito o, en su defecto, el município do prestador"""
        return self.c_loc_emi or self.prestador.codigo_municipio

    @property
    def local_prestacao(self) -> Optional[Text]:
        return self.servico.c_loc_prestacao or self.local_emissao

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "DpsRequest":
        """Construye el request desde el payload anidado (nunca lanza por campos faltantes)"""
        payload = payload or {}
        prest = payload.get("prestador") or {}
        toma = payload.get("tomador") or {}
        serv = payload.get("servico") or {}

        prestador = Prestador(
            cnpj=_text(prest.get("cnpj") or prest.get("CNPJ")),
            cpf=_text(prest.get("cpf") or prest.get("CPF")),
            inscricao_municipal=_text(prest.get("inscricaoMunicipal") or prest.get("IM")),
            razao_social=_text(prest.get("razaoSocial") or prest.get("xNome")),
            codigo_municipio=_text(prest.get("codigoMunicipio")),
            op_simp_nac=_text(prest.get("opSimpNac")),
            reg_esp_trib=_text(prest.get("regEspTrib")),
        )
        tomador = Tomador(
            documento=_text(toma.get("documento") or toma.get("cnpj") or toma.get("cpf")),
            razao_social=_text(toma.get("razaoSocial") or toma.get("xNome")),
            email=_text(toma.get("email")),
            telefone=_text(toma.get("telefone")),
        )
        servico = Servico(
            c_trib_nac=_text(serv.get("cTribNac") or serv.get("codigo")),
            c_loc_prestacao=_text(serv.get("cLocPrestacao")),
            descricao=_text(serv.get("descricao") or serv.get("discriminacao")),
            trib_issqn=_text(serv.get("tribISSQN")),
            tp_ret_issqn=_text(serv.get("tpRetISSQN")),
            aliquota=_raw(serv.get("aliquota")),
        )
        return cls(
            prestador=prestador,
            tomador=tomador,
            servico=servico,
            valor_servicos=_raw(payload.get("valor_servicos")),
            tp_amb=_text(payload.get("tpAmb")),
            tp_emit=_text(payload.get("tpEmit")),
            serie=_text(payload.get("serie")),
            n_dps=_text(payload.get("nDPS")),
            d_compet=_text(payload.get("dCompet")),
            dh_emi=_text(payload.get("dhEmi")),
            c_loc_emi=_text(payload.get("cLocEmi")),
            ver_aplic=_text(payload.get("verAplic")),
        )


@dataclass
class ValidationOutcome:
    """Resultado de validación: errors bloquean el envío, warnings no"""
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    catalog_summary: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "catalogSummary": self.catalog_summary,
        }


@dataclass(frozen=True)
class DpsDocument:
    """XML DPS construido + identificador + modo de envoltura"""
    xml: str
    identifier: str
    wrapping_mode: str
    root_tag: str

    @property
    def wrapped(self) -> bool:
        return self.wrapping_mode == "wrapped"


@dataclass(frozen=True)
class TransmissionResult:
    """Resultado normalizado de una transmisión (XML o JSON)"""
    success: bool
    message: str
    numero: Optional[str] = None
    codigo_verificacao: Optional[str] = None
    protocolo: Optional[str] = None
    chave_acesso: Optional[str] = None
    xml_retorno: Optional[str] = None
    link_visualizacao: Optional[str] = None

    @classmethod
    def failure(cls, message: str, xml_retorno: Optional[str] = None) -> "TransmissionResult":
        return cls(success=False, message=message, xml_retorno=xml_retorno)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "numero": self.numero,
            "codigoVerificacao": self.codigo_verificacao,
            "protocolo": self.protocolo,
            "chaveAcesso": self.chave_acesso,
            "xmlRetorno": self.xml_retorno,
            "linkVisualizacao": self.link_visualizacao,
        }


@dataclass(frozen=True)
class CatalogCacheEntry:
    key: str
    payload: Any
    fetched_at: float
    ttl: int

    def is_fresh(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return (now - self.fetched_at) <= self.ttl


@dataclass(frozen=True)
class CatalogLookup:
    """
    Resultado explícito de una consulta al catálogo.

    ok=False representa una caída/ausencia (nunca se lanza excepción por eso).
    """
    ok: bool
    data: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
