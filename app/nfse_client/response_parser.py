"""
Parser de respuestas Sefin Nacional (JSON o XML) -> TransmissionResult

Nunca lanza excepción por respuestas mal formadas: se devuelven como
TransmissionResult(success=False, ...).
"""
import binascii
import json
import logging
import zlib
from typing import Any, Mapping, Optional, Union

from lxml import etree

from .models import TransmissionResult
from .xml_utils import decode_bytes, find_all_local, find_text_local, gzip_b64_decode, parse_xml

logger = logging.getLogger(__name__)

EMPTY_RESPONSE_MESSAGE = "Resposta vazia"
DEFAULT_SUCCESS_MESSAGE = "Processado com sucesso"
DEFAULT_NO_STATUS_MESSAGE = "Retorno sem status explícito"
DEFAULT_JSON_ERROR_MESSAGE = "Resposta JSON sem XML da NFSe"

# Campos JSON con XML gzip+base64
NESTED_XML_FIELDS = ("nfseXmlGZipB64", "xmlGZipB64", "dpsXmlGZipB64")

STATUS_NODES = ("Sucesso", "sucesso", "Status", "cStat")
MESSAGE_NODES = ("Mensagem", "mensagem", "xMotivo")
TRUTHY_STATUS = ("1", "100", "150", "true", "sucesso", "ok")


def is_truthy_status(value: Optional[str]) -> bool:
    if value is None:
        return False
    return value.strip().lower() in TRUTHY_STATUS


def infer_success_from_absence_of_errors(numero: Optional[str], has_error_nodes: bool) -> bool:
    """
    Heurística: sin marcador de status explícito, hay éxito si vino número de
    NFSe y no hay nodos MensagemRetorno.

    Fuente conocida de falsos positivos si la API cambia la forma de reportar
    errores (p.ej. un warning no reconocido junto a un número).
    """
    return numero is not None and not has_error_nodes


def _first_xpath_text(root: etree._Element, queries: tuple) -> Optional[str]:
    for query in queries:
        for node in root.xpath(query):
            text = "".join(node.itertext()).strip()
            if text:
                return text
    return None


def extract_json_error(data: Mapping[str, Any]) -> Optional[str]:
    """
    Mensaje de error de las formas conocidas:
    erros[0].Descricao|descricao|mensagem, erro.descricao, mensagem (con erro),
    message, error (str o {message|descricao})
    """
    erros = data.get("erros") or data.get("Erros")
    if isinstance(erros, list) and erros:
        first = erros[0]
        if isinstance(first, Mapping):
            for key in ("Descricao", "descricao", "mensagem", "Mensagem"):
                if first.get(key):
                    codigo = first.get("Codigo") or first.get("codigo")
                    return f"{codigo}: {first[key]}" if codigo else str(first[key])
        elif first:
            return str(first)

    erro = data.get("erro")
    if isinstance(erro, Mapping):
        for key in ("descricao", "Descricao", "mensagem"):
            if erro.get(key):
                return str(erro[key])
    elif isinstance(erro, str) and erro:
        return erro

    error = data.get("error")
    if isinstance(error, Mapping):
        for key in ("message", "descricao", "mensagem"):
            if error.get(key):
                return str(error[key])
    elif isinstance(error, str) and error:
        return error

    if data.get("message") and not any(data.get(f) for f in NESTED_XML_FIELDS):
        return str(data["message"])
    return None


class ResponseInterpreter:
    """Normaliza respuestas XML/JSON de la API en TransmissionResult"""

    def parse(self, raw: Union[str, bytes, None]) -> TransmissionResult:
        if isinstance(raw, bytes):
            raw = decode_bytes(raw)
        if raw is None or not raw.strip():
            return TransmissionResult.failure(EMPTY_RESPONSE_MESSAGE)

        text = raw.strip()
        if text[0] in "{[":
            try:
                data = json.loads(text)
            except ValueError:
                data = None
            if isinstance(data, Mapping):
                return self.parse_json(data)

        return self.parse_xml(text)

    def parse_json(self, data: Mapping[str, Any]) -> TransmissionResult:
        error = extract_json_error(data)
        xml_retorno = self._decode_nested_xml(data)
        if isinstance(data.get("data"), Mapping) and xml_retorno is None:
            xml_retorno = self._decode_nested_xml(data["data"])

        chave = data.get("chaveAcesso") or data.get("chave_acesso")
        if error:
            logger.info(f"Resposta JSON com erro: {error}")
            return TransmissionResult(
                success=False,
                message=error,
                chave_acesso=str(chave) if chave else None,
                xml_retorno=xml_retorno,
            )
        if xml_retorno is None:
            return TransmissionResult.failure(str(data.get("mensagem") or DEFAULT_JSON_ERROR_MESSAGE))

        numero = None
        codigo = None
        try:
            root = parse_xml(xml_retorno)
        except etree.XMLSyntaxError:
            root = None
        if root is not None:
            numero = find_text_local(root, "nNFSe", "NumeroNfse", "Numero")
            codigo = find_text_local(root, "cVerif", "CodigoVerificacao")
            if not chave:
                inf = find_all_local(root, "infNFSe")
                if inf and inf[0].get("Id", "").startswith("NFS"):
                    chave = inf[0].get("Id")[3:]

        protocolo = data.get("idDps") or data.get("protocolo")
        return TransmissionResult(
            success=True,
            message=str(data.get("mensagem") or DEFAULT_SUCCESS_MESSAGE),
            numero=numero,
            codigo_verificacao=codigo,
            protocolo=str(protocolo) if protocolo else None,
            chave_acesso=str(chave) if chave else None,
            xml_retorno=xml_retorno,
        )

    def parse_xml(self, text: str) -> TransmissionResult:
        try:
            root = parse_xml(text)
        except etree.XMLSyntaxError as e:
            message = str(e).strip() or "XML inválido"
            return TransmissionResult.failure(message, xml_retorno=text)

        status = find_text_local(root, *STATUS_NODES)
        mensagem = find_text_local(root, *MESSAGE_NODES)
        numero = _first_xpath_text(root, (
            "//*[local-name()='InfNfse']/*[local-name()='Numero']",
            "//*[local-name()='NumeroNfse']",
            "//*[local-name()='numeroNfse']",
            "//*[local-name()='nNFSe']",
        ))
        codigo = _first_xpath_text(root, (
            "//*[local-name()='InfNfse']/*[local-name()='CodigoVerificacao']",
            "//*[local-name()='CodigoVerificacao']",
        ))
        link = _first_xpath_text(root, ("//*[local-name()='LinkVisualizacaoNfse']",))
        protocolo = _first_xpath_text(root, (
            "//*[local-name()='Protocolo']",
            "//*[local-name()='nProt']",
        ))
        chave = _first_xpath_text(root, (
            "//*[local-name()='chaveAcesso']",
            "//*[local-name()='ChaveAcesso']",
        ))
        error_nodes = root.xpath("//*[local-name()='MensagemRetorno']/*[local-name()='Mensagem']")
        has_errors = len(error_nodes) > 0

        if is_truthy_status(status):
            success = True
        elif has_errors:
            success = False
        else:
            success = infer_success_from_absence_of_errors(numero, has_errors)

        if mensagem is None:
            mensagem = DEFAULT_SUCCESS_MESSAGE if success else DEFAULT_NO_STATUS_MESSAGE

        return TransmissionResult(
            success=success,
            message=mensagem,
            numero=numero,
            codigo_verificacao=codigo,
            protocolo=protocolo,
            chave_acesso=chave,
            xml_retorno=text,
            link_visualizacao=link,
        )

    @staticmethod
    def _decode_nested_xml(data: Mapping[str, Any]) -> Optional[str]:
        for field_name in NESTED_XML_FIELDS:
            encoded = data.get(field_name)
            if not encoded or not isinstance(encoded, str):
                continue
            try:
                return decode_bytes(gzip_b64_decode(encoded))
            except (binascii.Error, OSError, EOFError, zlib.error, ValueError) as e:
                logger.warning(f"Campo {field_name} não decodificável: {e}")
        return None
