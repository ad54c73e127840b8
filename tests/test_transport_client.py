from pathlib import Path
import json
import os
import sys

import pytest
import requests

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import app.nfse_client.transport as transport
from app.nfse_client.certificates import CertificateBundle
from app.nfse_client.config import NfseConfig
from app.nfse_client.exceptions import NfseConfigError, NfseTransportError
from app.nfse_client.response_parser import ResponseInterpreter
from app.nfse_client.transport import EMIT_JSON_FIELD, TransportClient, enforce_https
from app.nfse_client.xml_utils import gzip_b64_decode

XML = '<?xml version="1.0" encoding="UTF-8"?><DPS xmlns="http://www.sped.fazenda.gov.br/nfse"/>'


class RecordingClient:
    def __init__(self, response="<Resposta/>"):
        self.response = response
        self.calls = []

    def __call__(self, method, path, body, headers):
        self.calls.append({"method": method, "path": path, "body": body, "headers": headers})
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


class FakeResponse:
    def __init__(self, status_code=200, content=b"<Resposta/>", encoding="utf-8"):
        self.status_code = status_code
        self.content = content
        self.encoding = encoding


class FakeSession:
    instances = []
    response = FakeResponse()
    error = None

    def __init__(self):
        self.cert = None
        self.verify = None
        self.closed = False
        self.seen = {}
        FakeSession.instances.append(self)

    def request(self, method, url, data=None, headers=None, timeout=None):
        cert_path, key_path = self.cert
        self.seen = {
            "method": method,
            "url": url,
            "data": data,
            "headers": headers,
            "timeout": timeout,
            "cert_existed": os.path.exists(cert_path),
            "key_content": Path(key_path).read_bytes(),
            "key_mode": os.stat(key_path).st_mode & 0o777,
        }
        if FakeSession.error is not None:
            raise FakeSession.error
        return FakeSession.response

    def close(self):
        self.closed = True


@pytest.fixture
def fake_session(monkeypatch):
    FakeSession.instances = []
    FakeSession.response = FakeResponse()
    FakeSession.error = None
    monkeypatch.setattr(transport.requests, "Session", FakeSession)
    return FakeSession


@pytest.fixture
def bundle():
    return CertificateBundle(cert_pem=b"-----CERT-----\n", key_pem=b"-----KEY-----\n")


def test_emit_uses_json_envelope(nfse_config):
    client = RecordingClient()
    TransportClient(nfse_config, http_client=client).send("emitir", XML)

    call = client.calls[0]
    assert call["method"] == "POST"
    assert call["path"] == "/nfse/emitir"
    assert call["headers"]["Content-Type"] == "application/json"
    body = json.loads(call["body"])
    assert list(body) == [EMIT_JSON_FIELD]
    assert gzip_b64_decode(body[EMIT_JSON_FIELD]).decode("utf-8") == XML


def test_other_operations_send_raw_base64_xml(nfse_config):
    client = RecordingClient()
    TransportClient(nfse_config, http_client=client).send("consultar", XML)

    call = client.calls[0]
    assert call["path"] == "/nfse/consultar"
    assert call["headers"]["Content-Type"] == "application/xml"
    assert call["headers"]["Accept"] == "application/xml"
    assert gzip_b64_decode(call["body"]).decode("utf-8") == XML


def test_auth_headers_are_added(tmp_path):
    config = NfseConfig(auth_token="tok123", api_key="key456", cache_dir=str(tmp_path))
    client = RecordingClient()
    TransportClient(config, http_client=client).send("cancelar", XML)
    headers = client.calls[0]["headers"]
    assert headers["Authorization"] == "Bearer tok123"
    assert headers["X-API-Key"] == "key456"


def test_endpoint_override_with_path_params(tmp_path):
    config = NfseConfig(endpoints={"consultar": "v2/nfse/{chave}"}, cache_dir=str(tmp_path))
    client = RecordingClient()
    TransportClient(config, http_client=client).send("consultar", XML, chave="3550308ABC")
    assert client.calls[0]["path"] == "/v2/nfse/3550308ABC"


def test_unknown_operation_is_config_error(nfse_config):
    client = RecordingClient()
    with pytest.raises(NfseConfigError, match="operação recibo"):
        TransportClient(nfse_config, http_client=client).send("recibo", XML)
    assert client.calls == []


@pytest.mark.parametrize(
    "url, expected",
    [
        ("https://sefin.nfse.gov.br/SefinNacional/", "https://sefin.nfse.gov.br/SefinNacional"),
        ("http://sefin.nfse.gov.br/api", "https://sefin.nfse.gov.br/api"),
        ("sefin.nfse.gov.br", "https://sefin.nfse.gov.br"),
    ],
)
def test_enforce_https(url, expected):
    assert enforce_https(url) == expected


@pytest.mark.parametrize("url", ["", "ftp://sefin.nfse.gov.br"])
def test_enforce_https_rejects(url):
    with pytest.raises(NfseConfigError):
        enforce_https(url)


def test_injected_client_failure_becomes_transport_error(nfse_config):
    client = RecordingClient(response=RuntimeError("connection reset"))
    with pytest.raises(NfseTransportError) as excinfo:
        TransportClient(nfse_config, http_client=client).send("consultar", XML)
    assert excinfo.value.operation == "consultar"
    assert len(excinfo.value.correlation_id) == 32
    assert "connection reset" in excinfo.value.message


def test_mtls_requires_certificate(nfse_config, fake_session):
    with pytest.raises(NfseTransportError, match="Certificado digital obrigatório"):
        TransportClient(nfse_config).send("consultar", XML)
    assert fake_session.instances == []


def test_mtls_temp_files_removed_after_success(nfse_config, fake_session, bundle):
    body = TransportClient(nfse_config, bundle).send("emitir", XML)
    assert body == "<Resposta/>"

    session = fake_session.instances[0]
    assert session.seen["url"] == "https://sefin.producaorestrita.nfse.gov.br/SefinNacional/nfse/emitir"
    assert session.seen["cert_existed"] is True
    assert session.seen["key_content"] == bundle.key_pem
    assert session.seen["key_mode"] == 0o600
    assert session.seen["timeout"] == nfse_config.request_timeout
    assert session.closed is True
    cert_path, key_path = session.cert
    assert not os.path.exists(cert_path)
    assert not os.path.exists(key_path)


def test_mtls_temp_files_removed_after_network_error(nfse_config, fake_session, bundle):
    fake_session.error = requests.exceptions.ConnectionError("refused")
    with pytest.raises(NfseTransportError, match="refused"):
        TransportClient(nfse_config, bundle).send("consultar", XML)
    cert_path, key_path = fake_session.instances[0].cert
    assert not os.path.exists(cert_path)
    assert not os.path.exists(key_path)


def test_non_2xx_status_raises_with_context(nfse_config, fake_session, bundle):
    fake_session.response = FakeResponse(status_code=500, content=b'{"erro": "interno"}')
    with pytest.raises(NfseTransportError) as excinfo:
        TransportClient(nfse_config, bundle).send("consultar", XML)
    err = excinfo.value
    assert err.http_status == 500
    assert err.code == "500"
    assert err.body_excerpt == '{"erro": "interno"}'
    assert err.correlation_id in err.message


def test_http_base_url_is_upgraded(tmp_path, fake_session, bundle):
    config = NfseConfig(api_base_url="http://localhost:8443/api", cache_dir=str(tmp_path))
    TransportClient(config, bundle).send("consultar", XML)
    assert fake_session.instances[0].seen["url"] == "https://localhost:8443/api/nfse/consultar"


def test_debug_trace_is_written_as_jsonl(tmp_path):
    log_path = tmp_path / "logs" / "http.jsonl"
    config = NfseConfig(debug=True, debug_log_path=str(log_path), cache_dir=str(tmp_path / "cache"))
    client = TransportClient(config, http_client=RecordingClient())
    client.send("consultar", XML)
    client.http_client = RecordingClient(response=RuntimeError("boom"))
    with pytest.raises(NfseTransportError):
        client.send("consultar", XML)

    lines = [json.loads(line) for line in log_path.read_text(encoding="utf-8").splitlines()]
    assert len(lines) == 2
    assert lines[0]["operation"] == "consultar"
    assert lines[0]["status"] == 200
    assert lines[0]["error"] is None
    assert lines[0]["correlation_id"] != lines[1]["correlation_id"]
    assert "boom" in lines[1]["error"]


def test_debug_trace_failure_does_not_break_request(tmp_path):
    config = NfseConfig(debug=True, debug_log_path=str(tmp_path), cache_dir=str(tmp_path / "cache"))
    body = TransportClient(config, http_client=RecordingClient("<ok/>")).send("consultar", XML)
    assert body == "<ok/>"


def test_debug_trace_disabled_by_default(nfse_config, tmp_path):
    TransportClient(nfse_config, http_client=RecordingClient()).send("consultar", XML)
    assert not (tmp_path / "debug.jsonl").exists()


@pytest.mark.parametrize("encoding", ["ISO-8859-1", "charset-inexistente", None])
def test_response_body_decoded_as_utf8_regardless_of_header(nfse_config, fake_session, bundle, encoding):
    fake_session.response = FakeResponse(
        content="<Resposta><Mensagem>Não</Mensagem></Resposta>".encode("utf-8"),
        encoding=encoding,
    )
    body = TransportClient(nfse_config, bundle).send("consultar", XML)
    assert body == "<Resposta><Mensagem>Não</Mensagem></Resposta>"
    assert ResponseInterpreter().parse(body).message == "Não"


def test_legacy_response_body_falls_back_to_cp1252(nfse_config, fake_session, bundle):
    fake_session.response = FakeResponse(content="<Mensagem>Emissão</Mensagem>".encode("cp1252"))
    assert TransportClient(nfse_config, bundle).send("consultar", XML) == "<Mensagem>Emissão</Mensagem>"
