"""
Utilidades XML para NFSe Nacional

- Normalización de texto a UTF-8 válido (corrige mojibake y encodings legacy)
- Prolog UTF-8 canónico
- Envelope gzip + base64 (request y respuesta)
- Búsqueda por local-name ignorando prefijos
"""
import base64
import gzip
import re
from typing import Any, List, Optional, Union

from lxml import etree

from .exceptions import NfseEncodingError

UTF8_PROLOG = '<?xml version="1.0" encoding="UTF-8"?>'

# Caracteres no permitidos en XML 1.0 (se permiten \t \n \r)
_ILLEGAL_XML_CHARS = re.compile(
    "[\x00-\x08\x0b\x0c\x0e-\x1f\ufffe\uffff\ud800-\udfff]"
)
_PROLOG_RE = re.compile(r"^\s*<\?xml[^?]*\?>\s*", re.DOTALL)

# Marcadores típicos de UTF-8 leído como latin-1/cp1252 ("aÃ§Ã£o", "Â ")
_MOJIBAKE_MARKERS = ("Ã", "Â")

LEGACY_ENCODINGS = ("cp1252", "latin-1")


def decode_bytes(data: bytes) -> str:
    """Decodifica bytes: utf-8, luego cp1252, luego latin-1"""
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        pass
    for encoding in LEGACY_ENCODINGS:
        try:
            return data.decode(encoding)
        except UnicodeDecodeError:
            continue
    # latin-1 decodifica cualquier byte; solo se llega aquí con entradas anómalas
    return data.decode("utf-8", errors="replace")


def repair_mojibake(text: str) -> str:
    """
    Intenta revertir UTF-8 interpretado como latin-1/cp1252.

    Best-effort: si la conversión falla se devuelve el texto original.
    """
    if not any(marker in text for marker in _MOJIBAKE_MARKERS):
        return text
    for encoding in ("latin-1", "cp1252"):
        try:
            return text.encode(encoding).decode("utf-8")
        except (UnicodeEncodeError, UnicodeDecodeError):
            continue
    return text


def strip_illegal_xml_chars(text: str) -> str:
    return _ILLEGAL_XML_CHARS.sub("", text)


def normalize_text(value: Any) -> str:
    """
    Normaliza un valor a texto seguro para XML en UTF-8.

    Raises:
        NfseEncodingError: Si tras todos los fallbacks el texto no es UTF-8 válido
    """
    if value is None:
        return ""
    if isinstance(value, bytes):
        text = decode_bytes(value)
    else:
        text = str(value)
    text = repair_mojibake(text)
    text = strip_illegal_xml_chars(text)
    try:
        text.encode("utf-8")
    except UnicodeEncodeError as e:
        raise NfseEncodingError(f"Texto no convertible a UTF-8: {e}")
    return text


def ensure_utf8_prolog(xml: Union[str, bytes]) -> str:
    """
    Devuelve el XML con un único prolog UTF-8 canónico al inicio.

    Raises:
        NfseEncodingError: Si el contenido no puede normalizarse a UTF-8
    """
    if isinstance(xml, bytes):
        xml = decode_bytes(xml)
    body = xml.lstrip("\ufeff")
    body = _PROLOG_RE.sub("", body, count=1)
    body = strip_illegal_xml_chars(body)
    try:
        body.encode("utf-8")
    except UnicodeEncodeError as e:
        raise NfseEncodingError(f"XML no convertible a UTF-8: {e}")
    return UTF8_PROLOG + body


def gzip_b64_encode(xml: Union[str, bytes]) -> str:
    """gzip + base64 (ASCII) del XML en UTF-8"""
    raw = xml.encode("utf-8") if isinstance(xml, str) else xml
    return base64.b64encode(gzip.compress(raw)).decode("ascii")


def gzip_b64_decode(payload: Union[str, bytes]) -> bytes:
    """Inverso de gzip_b64_encode; devuelve los bytes originales"""
    if isinstance(payload, str):
        payload = payload.strip().encode("ascii")
    return gzip.decompress(base64.b64decode(payload))


def local_name(tag: Any) -> str:
    """Nombre local de un tag lxml ('{ns}Tag' -> 'Tag')"""
    if not isinstance(tag, str):
        return ""
    return tag.split("}", 1)[1] if tag.startswith("{") else tag


def find_all_local(root: etree._Element, name: str) -> List[etree._Element]:
    """Todos los descendientes (incluida la raíz) con ese local-name"""
    return root.xpath(".//*[local-name()=$name] | self::*[local-name()=$name]", name=name)


def find_first_local(root: etree._Element, name: str) -> Optional[etree._Element]:
    found = find_all_local(root, name)
    return found[0] if found else None


def find_text_local(root: etree._Element, *names: str) -> Optional[str]:
    """Texto del primer elemento que coincida con alguno de los nombres (en orden)"""
    for name in names:
        for node in find_all_local(root, name):
            text = (node.text or "").strip()
            if text:
                return text
    return None


def parse_xml(xml: Union[str, bytes]) -> etree._Element:
    """
    Parsea XML sin resolver entidades ni acceder a red.

    Un str ya está decodificado: su declaración encoding= se descarta para que
    lxml no reinterprete los bytes UTF-8 como ISO-8859-1.
    """
    if isinstance(xml, str):
        xml = _PROLOG_RE.sub("", xml.lstrip("\ufeff"), count=1).encode("utf-8")
    parser = etree.XMLParser(resolve_entities=False, no_network=True, remove_blank_text=False)
    return etree.fromstring(xml, parser=parser)
