from pathlib import Path
import sys

import lxml.etree as etree

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.nfse_client.config import NfseConfig
from app.nfse_client.xml_generator import DpsBuilder, build_simple_envelope
from app.nfse_client.xml_utils import UTF8_PROLOG

NS = "http://www.sped.fazenda.gov.br/nfse"
NSMAP = {"n": NS}
EXPECTED_DPS_ID = "DPS355030821234567800019900900000000000000042"


def _root(xml: str):
    return etree.fromstring(xml.encode("utf-8"))


def test_wrapped_document_structure(dps_payload, nfse_config):
    document = DpsBuilder(nfse_config).build(dps_payload)
    assert document.wrapped is True
    assert document.root_tag == "NFSe"
    assert document.identifier == EXPECTED_DPS_ID
    assert document.xml.startswith(UTF8_PROLOG)

    root = _root(document.xml)
    assert root.tag == f"{{{NS}}}NFSe"
    assert root.get("versao") == "1.00"
    inf_nfse = root.find("n:infNFSe", NSMAP)
    assert inf_nfse.get("Id") == "NFS" + EXPECTED_DPS_ID[3:]
    inf_dps = inf_nfse.find("n:DPS/n:infDPS", NSMAP)
    assert inf_dps.get("Id") == EXPECTED_DPS_ID


def test_inf_dps_child_order(dps_payload, nfse_config):
    root = _root(DpsBuilder(nfse_config).build(dps_payload).xml)
    inf_dps = root.find(".//n:infDPS", NSMAP)
    assert [etree.QName(c).localname for c in inf_dps] == [
        "tpAmb", "dhEmi", "verAplic", "serie", "nDPS", "dCompet", "tpEmit", "cLocEmi",
        "prest", "toma", "serv", "valores",
    ]
    assert inf_dps.findtext("n:serie", namespaces=NSMAP) == "900"
    assert inf_dps.findtext("n:nDPS", namespaces=NSMAP) == "42"
    assert inf_dps.findtext("n:cLocEmi", namespaces=NSMAP) == "3550308"


def test_standalone_dps_root(dps_payload, tmp_path):
    config = NfseConfig(dps_root=True, cache_dir=str(tmp_path / "cache"))
    document = DpsBuilder(config).build(dps_payload)
    assert document.wrapped is False
    assert document.root_tag == "DPS"
    root = _root(document.xml)
    assert root.tag == f"{{{NS}}}DPS"
    assert root.find("n:infDPS", NSMAP).get("Id") == EXPECTED_DPS_ID


def test_prestador_cnpj_branch(dps_payload, nfse_config):
    root = _root(DpsBuilder(nfse_config).build(dps_payload).xml)
    prest = root.find(".//n:prest", NSMAP)
    assert prest.findtext("n:CNPJ", namespaces=NSMAP) == "12345678000199"
    assert prest.find("n:CPF", NSMAP) is None
    assert prest.findtext("n:IM", namespaces=NSMAP) == "123456"
    assert prest.find("n:xNome", NSMAP) is None
    assert prest.findtext("n:regTrib/n:opSimpNac", namespaces=NSMAP) == "1"


def test_prestador_cpf_branch(dps_payload, nfse_config):
    dps_payload["prestador"].pop("cnpj")
    dps_payload["prestador"]["cpf"] = "123.456.789-09"
    document = DpsBuilder(nfse_config).build(dps_payload)
    prest = _root(document.xml).find(".//n:prest", NSMAP)
    assert prest.findtext("n:CPF", namespaces=NSMAP) == "12345678909"
    assert prest.find("n:CNPJ", NSMAP) is None
    assert document.identifier[10] == "1"


def test_tomador_cpf_and_contacts(dps_payload, nfse_config):
    dps_payload["tomador"]["documento"] = "123.456.789-09"
    dps_payload["tomador"]["telefone"] = "(11) 99999-0000"
    toma = _root(DpsBuilder(nfse_config).build(dps_payload).xml).find(".//n:toma", NSMAP)
    assert toma.findtext("n:CPF", namespaces=NSMAP) == "12345678909"
    assert toma.findtext("n:xNome", namespaces=NSMAP) == "Tomador Exemplo SA"
    assert toma.findtext("n:fone", namespaces=NSMAP) == "11999990000"
    assert toma.findtext("n:email", namespaces=NSMAP) == "financeiro@tomador.com.br"


def test_im_isento_when_required_and_missing(dps_payload, tmp_path):
    dps_payload["prestador"].pop("inscricaoMunicipal")
    config = NfseConfig(dps_require_im=True, cache_dir=str(tmp_path / "cache"))
    prest = _root(DpsBuilder(config).build(dps_payload).xml).find(".//n:prest", NSMAP)
    assert prest.findtext("n:IM", namespaces=NSMAP) == "ISENTO"


def test_servico_and_valores(dps_payload, nfse_config):
    dps_payload["servico"]["cTribNac"] = "107"
    dps_payload["servico"]["aliquota"] = "0.02"
    root = _root(DpsBuilder(nfse_config).build(dps_payload).xml)
    assert root.findtext(".//n:serv/n:locPrest/n:cLocPrestacao", namespaces=NSMAP) == "3550308"
    assert root.findtext(".//n:cServ/n:cTribNac", namespaces=NSMAP) == "010701"
    assert root.findtext(".//n:vServPrest/n:vServ", namespaces=NSMAP) == "1500.00"
    trib_mun = root.find(".//n:trib/n:tribMun", NSMAP)
    assert trib_mun.findtext("n:tribISSQN", namespaces=NSMAP) == "1"
    assert trib_mun.findtext("n:pAliq", namespaces=NSMAP) == "2.00"
    assert trib_mun.findtext("n:tpRetISSQN", namespaces=NSMAP) == "1"
    assert root.findtext(".//n:totTrib/n:indTotTrib", namespaces=NSMAP) == "0"


def test_paliq_omitted_when_disabled_or_not_tributavel(dps_payload, tmp_path):
    config = NfseConfig(dps_send_paliq=False, cache_dir=str(tmp_path / "cache"))
    root = _root(DpsBuilder(config).build(dps_payload).xml)
    assert root.find(".//n:pAliq", NSMAP) is None

    dps_payload["servico"]["tribISSQN"] = "2"
    dps_payload["servico"].pop("aliquota")
    config = NfseConfig(cache_dir=str(tmp_path / "cache"))
    root = _root(DpsBuilder(config).build(dps_payload).xml)
    assert root.find(".//n:pAliq", NSMAP) is None


def test_build_is_deterministic(dps_payload, nfse_config):
    builder = DpsBuilder(nfse_config)
    assert builder.build(dps_payload).xml == builder.build(dict(dps_payload)).xml


def test_default_dh_emi_is_utc(dps_payload, nfse_config):
    dps_payload.pop("dhEmi")
    root = _root(DpsBuilder(nfse_config).build(dps_payload).xml)
    assert root.findtext(".//n:dhEmi", namespaces=NSMAP).endswith("+00:00")


def test_description_is_normalized_to_utf8(dps_payload, nfse_config):
    dps_payload["servico"]["descricao"] = "Manutenção\x00 de sistemas".encode("cp1252")
    xml = DpsBuilder(nfse_config).build(dps_payload).xml
    assert "Manutenção de sistemas" in xml
    xml.encode("utf-8")


def test_simple_envelope_skips_none_and_embeds_elements():
    child = etree.Element(f"{{{NS}}}Extra")
    xml = build_simple_envelope(
        "CancelarNfseEnvio",
        {"ChaveNfse": "123", "Protocolo": None, "Anexo": child},
    )
    root = _root(xml)
    assert root.tag == f"{{{NS}}}CancelarNfseEnvio"
    assert root.findtext("n:ChaveNfse", namespaces=NSMAP) == "123"
    assert root.find("n:Protocolo", NSMAP) is None
    assert root.find("n:Anexo/n:Extra", NSMAP) is not None
