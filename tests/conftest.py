from pathlib import Path
import copy
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.nfse_client.config import NfseConfig


BASE_PAYLOAD = {
    "tpAmb": "2",
    "dhEmi": "2026-02-14T10:00:00-03:00",
    "dCompet": "2026-02-14",
    "serie": "900",
    "nDPS": "42",
    "tpEmit": "1",
    "prestador": {
        "cnpj": "12345678000199",
        "inscricaoMunicipal": "123456",
        "razaoSocial": "Prestadora Exemplo Ltda",
        "codigoMunicipio": "3550308",
        "opSimpNac": "1",
        "regEspTrib": "0",
    },
    "tomador": {
        "documento": "98765432000110",
        "razaoSocial": "Tomador Exemplo SA",
        "email": "financeiro@tomador.com.br",
    },
    "servico": {
        "cTribNac": "010701",
        "descricao": "Desenvolvimento de software sob encomenda",
        "tribISSQN": "1",
        "tpRetISSQN": "1",
        "aliquota": "2",
    },
    "valor_servicos": "1500.00",
}


@pytest.fixture
def dps_payload():
    return copy.deepcopy(BASE_PAYLOAD)


@pytest.fixture
def nfse_config(tmp_path: Path):
    return NfseConfig(
        ambiente="homologacao",
        signature_mode="none",
        cache_dir=str(tmp_path / "cache"),
        debug_log_path=str(tmp_path / "debug.jsonl"),
    )


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    for name in (
        "NFSE_DEBUG_HTTP",
        "NFSE_CERT_PATH",
        "NFSE_CERT_PEM_PATH",
        "NFSE_KEY_PEM_PATH",
        "NFSE_ENDPOINTS",
        "NFSE_CATALOG_ENDPOINTS",
        "NFSE_CERT_PASSWORD",
        "NFSE_KEY_PASSWORD",
    ):
        monkeypatch.delenv(name, raising=False)
