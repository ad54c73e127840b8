"""
Generador de XML DPS (Declaração de Prestação de Serviço) - NFSe Nacional

Estructura (modo envuelto, default):

    NFSe (versao)
      infNFSe (Id="NFS" + 42 dígitos)
        DPS (versao)
          infDPS (Id="DPS" + 42 dígitos)
            tpAmb, dhEmi, verAplic, serie, nDPS, dCompet, tpEmit, cLocEmi,
            prest, toma, serv, valores

Con dps_root=True el DPS es la raíz del documento.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Union

from lxml import etree

from .config import NfseConfig
from .dps_utils import (
    build_dps_identifier,
    build_nfse_envelope_identifier,
    fit_digits,
    format_decimal,
    normalize_aliquota,
    normalize_ctribnac,
    only_digits,
)
from .models import DpsDocument, DpsRequest
from .validator import parse_dh_emi
from .xml_utils import ensure_utf8_prolog, normalize_text

logger = logging.getLogger(__name__)

IM_ISENTO = "ISENTO"


def _now_dh_emi() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def _format_dh_emi(value: Any) -> str:
    """dhEmi en la forma AAAA-MM-DDThh:mm:ss±hh:mm; si no parsea, se emite tal cual"""
    parsed = parse_dh_emi(value)
    if parsed is None:
        return normalize_text(value)
    return parsed.isoformat(timespec="seconds")


class DpsBuilder:
    """
    Construye el XML DPS a partir de un DpsRequest.

    Función pura del request + config: mismo input => mismo XML (salvo dhEmi
    por defecto cuando el caller no lo informa).
    """

    def __init__(self, config: Optional[NfseConfig] = None):
        self.config = config or NfseConfig()
        self.ns = self.config.xml_namespace

    def _el(self, parent: etree._Element, name: str, text: Any = None) -> etree._Element:
        elem = etree.SubElement(parent, f"{{{self.ns}}}{name}")
        if text is not None:
            elem.text = normalize_text(text).strip()
        return elem

    def identifier_for(self, request: DpsRequest) -> str:
        return build_dps_identifier(
            request.local_emissao,
            request.prestador.documento,
            request.serie,
            request.n_dps,
        )

    def build(self, request: Union[DpsRequest, Mapping[str, Any]]) -> DpsDocument:
        """
        Construye el documento DPS.

        Returns:
            DpsDocument con xml (prolog UTF-8), identificador y modo de envoltura
        """
        if not isinstance(request, DpsRequest):
            request = DpsRequest.from_dict(request)

        dps_id = self.identifier_for(request)
        dps = self.build_dps_element(request, dps_id)

        if self.config.dps_root:
            root = dps
        else:
            root = etree.Element(f"{{{self.ns}}}NFSe", nsmap={None: self.ns})
            root.set("versao", self.config.dps_versao)
            inf_nfse = etree.SubElement(root, f"{{{self.ns}}}infNFSe")
            inf_nfse.set(
                "Id",
                build_nfse_envelope_identifier(
                    request.local_emissao,
                    request.prestador.documento,
                    request.serie,
                    request.n_dps,
                ),
            )
            inf_nfse.append(dps)

        xml = ensure_utf8_prolog(etree.tostring(root, encoding="unicode"))
        logger.info(f"DPS construido: Id={dps_id} modo={self.config.wrapping_mode}")
        return DpsDocument(
            xml=xml,
            identifier=dps_id,
            wrapping_mode=self.config.wrapping_mode,
            root_tag=etree.QName(root).localname,
        )

    def build_dps_element(self, request: DpsRequest, dps_id: Optional[str] = None) -> etree._Element:
        """Elemento <DPS> con su infDPS (sin envoltura)"""
        dps_id = dps_id or self.identifier_for(request)
        dps = etree.Element(f"{{{self.ns}}}DPS", nsmap={None: self.ns})
        dps.set("versao", self.config.dps_versao)

        inf = self._el(dps, "infDPS")
        inf.set("Id", dps_id)

        dh_emi = _format_dh_emi(request.dh_emi) if request.dh_emi else _now_dh_emi()
        self._el(inf, "tpAmb", request.tp_amb or self.config.tp_amb)
        self._el(inf, "dhEmi", dh_emi)
        self._el(inf, "verAplic", normalize_text(request.ver_aplic or self.config.ver_aplic)[:20])
        self._el(inf, "serie", str(int(only_digits(request.serie) or "0")))
        self._el(inf, "nDPS", str(int(only_digits(request.n_dps) or "0")))
        self._el(inf, "dCompet", request.d_compet or dh_emi[:10])
        self._el(inf, "tpEmit", request.tp_emit or "1")
        self._el(inf, "cLocEmi", fit_digits(request.local_emissao, 7))

        self._append_prestador(inf, request)
        self._append_tomador(inf, request)
        self._append_servico(inf, request)
        self._append_valores(inf, request)
        return dps

    def _append_documento(self, parent: etree._Element, documento: Any) -> None:
        digits = only_digits(documento)
        if len(digits) == 11:
            self._el(parent, "CPF", digits)
        else:
            self._el(parent, "CNPJ", digits.zfill(14)[-14:])

    def _append_prestador(self, inf: etree._Element, request: DpsRequest) -> None:
        prestador = request.prestador
        prest = self._el(inf, "prest")
        self._append_documento(prest, prestador.documento)

        im = prestador.inscricao_municipal
        if im is None and self.config.dps_require_im:
            im = IM_ISENTO
        if im is not None:
            self._el(prest, "IM", im)

        # Emitente = prestador: el nombre se toma del cadastro nacional
        if (normalize_text(request.tp_emit).strip() or "1") != "1" and prestador.razao_social:
            self._el(prest, "xNome", prestador.razao_social)

        reg_trib = self._el(prest, "regTrib")
        self._el(reg_trib, "opSimpNac", prestador.op_simp_nac or "1")
        self._el(reg_trib, "regEspTrib", prestador.reg_esp_trib or "0")

    def _append_tomador(self, inf: etree._Element, request: DpsRequest) -> None:
        tomador = request.tomador
        toma = self._el(inf, "toma")
        self._append_documento(toma, tomador.documento)
        self._el(toma, "xNome", tomador.razao_social)
        if tomador.telefone:
            self._el(toma, "fone", only_digits(tomador.telefone))
        if tomador.email:
            self._el(toma, "email", tomador.email)

    def _append_servico(self, inf: etree._Element, request: DpsRequest) -> None:
        servico = request.servico
        serv = self._el(inf, "serv")
        loc_prest = self._el(serv, "locPrest")
        self._el(loc_prest, "cLocPrestacao", fit_digits(request.local_prestacao, 7))

        c_serv = self._el(serv, "cServ")
        self._el(c_serv, "cTribNac", normalize_ctribnac(servico.c_trib_nac))
        descricao = normalize_text(servico.descricao).strip()
        self._el(c_serv, "xDescServ", descricao[: self.config.max_descricao_length])

    def _append_valores(self, inf: etree._Element, request: DpsRequest) -> None:
        servico = request.servico
        valores = self._el(inf, "valores")
        v_serv_prest = self._el(valores, "vServPrest")
        self._el(v_serv_prest, "vServ", format_decimal(request.valor_servicos))

        trib = self._el(valores, "trib")
        trib_mun = self._el(trib, "tribMun")
        trib_issqn = normalize_text(servico.trib_issqn).strip() or "1"
        self._el(trib_mun, "tribISSQN", trib_issqn)

        if trib_issqn == "1" and self.config.dps_send_paliq:
            aliquota = normalize_aliquota(servico.aliquota)
            if aliquota is not None:
                self._el(trib_mun, "pAliq", format_decimal(aliquota))

        self._el(trib_mun, "tpRetISSQN", servico.tp_ret_issqn or "1")

        tot_trib = self._el(trib, "totTrib")
        self._el(tot_trib, "indTotTrib", "0")


def build_simple_envelope(
    root_name: str,
    payload: Mapping[str, Any],
    namespace: str = NfseConfig.DEFAULT_NAMESPACE,
    versao: str = "1.00",
) -> str:
    """
    Envelope XML simple para operaciones auxiliares (consulta, cancelamento...).

    Valores str se escriben como texto; elementos lxml se anexan como hijos.
    Valores None se omiten.
    """
    root = etree.Element(f"{{{namespace}}}{root_name}", nsmap={None: namespace})
    root.set("versao", versao)
    for name, value in payload.items():
        if value is None:
            continue
        node = etree.SubElement(root, f"{{{namespace}}}{name}")
        if isinstance(value, etree._Element):
            node.append(value)
        else:
            node.text = normalize_text(value).strip()
    return ensure_utf8_prolog(etree.tostring(root, encoding="unicode"))
