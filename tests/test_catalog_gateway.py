from pathlib import Path
import json
import sys
import time

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import app.nfse_client.catalog as catalog_module
from app.nfse_client.cache import FileCacheStore
from app.nfse_client.catalog import CatalogGateway
from app.nfse_client.config import NfseConfig


class StubGet:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.paths = []

    def __call__(self, path):
        self.paths.append(path)
        if self.error is not None:
            raise self.error
        return self.response


def _gateway(config, http_get, cache=None):
    return CatalogGateway(config, cache=cache, http_get=http_get)


def test_remote_then_fresh_cache(nfse_config):
    http_get = StubGet({"data": [{"codigo": "3550308", "nome": "São Paulo"}]})
    gateway = _gateway(nfse_config, http_get)

    first = gateway.list_municipalities()
    assert first.ok is True
    assert first.data == [{"codigo": "3550308", "nome": "São Paulo"}]
    assert first.metadata["source"] == "remote"

    second = gateway.list_municipalities()
    assert second.metadata == {"source": "cache", "stale": False, "cache_key": "municipios"}
    assert second.data == first.data
    assert http_get.paths == ["/catalogos/municipios"]


def test_force_refresh_bypasses_cache(nfse_config):
    http_get = StubGet('{"aliquota": 2}')
    gateway = _gateway(nfse_config, http_get)
    gateway.get_municipal_agreement("3550308")
    result = gateway.get_municipal_agreement("3550308", force_refresh=True)
    assert result.data == {"aliquota": 2}
    assert len(http_get.paths) == 2
    assert http_get.paths[0] == "/parametros_municipais/3550308/convenio"


def test_stale_cache_used_when_remote_fails(nfse_config):
    cache = FileCacheStore(nfse_config.cache_dir)
    cache.put("aliquotas:3550308", [{"codigoServico": "010701", "aliquota": 2}], ttl=-1)
    http_get = StubGet(error=ConnectionError("timeout"))

    result = _gateway(nfse_config, http_get, cache).get_aliquot_parametrization("3550308")
    assert result.ok is True
    assert result.data == [{"codigoServico": "010701", "aliquota": 2}]
    assert result.metadata["stale"] is True
    assert result.metadata["source"] == "cache"
    assert "timeout" in result.metadata["fallback_error"]


def test_remote_failure_without_cache_is_not_an_exception(nfse_config):
    http_get = StubGet(error=ConnectionError("timeout"))
    result = _gateway(nfse_config, http_get).get_aliquot_parametrization("3550308", "010701", "2026-02-14")
    assert result.ok is False
    assert result.data is None
    assert result.error.startswith("Falha ao obter catálogo nacional")
    assert http_get.paths == ["/parametros_municipais/3550308/010701/2026-02-14/aliquota"]


def test_invalid_payload_type_falls_back(nfse_config):
    result = _gateway(nfse_config, StubGet(42)).list_municipalities()
    assert result.ok is False


@pytest.mark.parametrize("codigo", ["355", "35503080", "", None])
def test_municipio_must_have_seven_digits(nfse_config, codigo):
    with pytest.raises(ValueError, match="7 dígitos"):
        _gateway(nfse_config, StubGet({})).get_aliquot_parametrization(codigo)


def test_catalog_endpoint_override(tmp_path):
    config = NfseConfig(
        catalog_endpoints={"aliquotas_municipio": "/v2/aliquotas?ibge={ibge}"},
        cache_dir=str(tmp_path / "cache"),
    )
    http_get = StubGet({"aliquota": 3})
    _gateway(config, http_get).get_aliquot_parametrization("3304557")
    assert http_get.paths == ["/v2/aliquotas?ibge=3304557"]


def test_cache_write_is_atomic_and_readable(tmp_path):
    cache = FileCacheStore(str(tmp_path / "cache"))
    entry = cache.put("municipios", {"total": 5570}, ttl=60)
    files = list((tmp_path / "cache").iterdir())
    assert len(files) == 1
    assert not files[0].name.startswith(".tmp_")

    stored = json.loads(files[0].read_text(encoding="utf-8"))
    assert stored["key"] == "municipios"
    assert stored["payload"] == {"total": 5570}

    loaded = cache.get("municipios")
    assert loaded.payload == {"total": 5570}
    assert loaded.is_fresh(now=entry.fetched_at + 60) is True
    assert loaded.is_fresh(now=entry.fetched_at + 61) is False


def test_corrupt_cache_file_is_ignored(tmp_path):
    cache = FileCacheStore(str(tmp_path / "cache"))
    cache.put("municipios", [], ttl=60)
    next((tmp_path / "cache").iterdir()).write_text("{not json", encoding="utf-8")
    assert cache.get("municipios") is None
    assert cache.get("nunca-gravado") is None


def test_httpx_request_uses_https_and_auth(tmp_path, monkeypatch):
    calls = []

    class FakeResponse:
        def raise_for_status(self):
            return None

        def json(self):
            return {"data": {"convenio": True}}

    def fake_get(url, headers=None, timeout=None, verify=None):
        calls.append({"url": url, "headers": headers, "timeout": timeout, "verify": verify})
        return FakeResponse()

    monkeypatch.setattr(catalog_module.httpx, "get", fake_get)
    config = NfseConfig(
        catalog_base_url="http://catalogo.nfse.gov.br/api/",
        auth_token="tok",
        cache_dir=str(tmp_path / "cache"),
        request_timeout=12,
    )
    result = CatalogGateway(config).get_municipal_agreement("3550308")

    assert result.ok is True
    assert result.data == {"convenio": True}
    assert calls[0]["url"] == "https://catalogo.nfse.gov.br/api/parametros_municipais/3550308/convenio"
    assert calls[0]["headers"]["Authorization"] == "Bearer tok"
    assert calls[0]["timeout"] == 12
    assert calls[0]["verify"] is True


def test_cached_entry_expires(nfse_config):
    cache = FileCacheStore(nfse_config.cache_dir)
    entry = cache.put("municipios", [], ttl=1)
    assert entry.is_fresh(now=time.time()) is True
    assert entry.is_fresh(now=entry.fetched_at + 2) is False


class ReadOnlyCache(FileCacheStore):
    def put(self, key, payload, ttl):
        raise PermissionError("cache somente leitura")


def test_unusable_cache_dir_does_not_break_lookup(tmp_path):
    blocker = tmp_path / "arquivo"
    blocker.write_text("x", encoding="utf-8")
    config = NfseConfig(cache_dir=str(blocker / "cache"))
    gateway = CatalogGateway(config, http_get=StubGet({"aliquota": 2}))

    result = gateway.get_municipal_agreement("3550308")
    assert result.ok is True
    assert result.data == {"aliquota": 2}
    assert result.metadata["source"] == "remote"
    assert "cache_error" in result.metadata


def test_failed_cache_write_keeps_remote_data(nfse_config):
    gateway = _gateway(nfse_config, StubGet({"data": [{"codigo": "3550308"}]}), ReadOnlyCache(nfse_config.cache_dir))
    result = gateway.list_municipalities()
    assert result.ok is True
    assert result.data == [{"codigo": "3550308"}]
    assert "somente leitura" in result.metadata["cache_error"]
