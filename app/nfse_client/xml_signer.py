"""
Firma digital XML (XMLDSig enveloped) para DPS NFSe Nacional

- RSA-SHA256, digest SHA-256, C14N
- Referencia URI="#<Id>" del elemento firmado (infDPS o, en el layout
  legado, InfDeclaracaoPrestacaoServico)
- La Signature queda como hija del padre del elemento firmado (DPS / Rps)
"""
import copy
import logging
from typing import Optional, Tuple

from lxml import etree
from signxml import XMLSigner, methods

from .certificates import CertificateBundle
from .config import SIGNATURE_MODES
from .exceptions import NfseSignatureError
from .xml_utils import ensure_utf8_prolog, find_first_local, parse_xml

logger = logging.getLogger(__name__)

# Orden de preferencia: layout DPS nacional, luego layout ABRASF legado
SIGNING_TARGETS = ("infDPS", "InfDeclaracaoPrestacaoServico")

C14N_ALGORITHM = "http://www.w3.org/TR/2001/REC-xml-c14n-20010315"


def resolve_signing_target(root: etree._Element) -> Tuple[etree._Element, str]:
    """
    Determina qué elemento se firma.

    Returns:
        (elemento, Id) del primer target encontrado

    Raises:
        NfseSignatureError: Si no hay elemento firmable o no tiene Id
    """
    for name in SIGNING_TARGETS:
        target = find_first_local(root, name)
        if target is None:
            continue
        target_id = target.get("Id")
        if not target_id:
            raise NfseSignatureError(f"Elemento {name} sin atributo Id; no se puede firmar")
        if target.getparent() is None:
            raise NfseSignatureError(f"Elemento {name} no puede ser la raíz del documento firmado")
        return target, target_id
    raise NfseSignatureError(
        f"No se encontró elemento firmable ({', '.join(SIGNING_TARGETS)})"
    )


class XmlSigner:
    """Firmador XMLDSig enveloped sobre un CertificateBundle"""

    def __init__(self, bundle: CertificateBundle):
        self.bundle = bundle

    def sign(self, xml: str) -> str:
        """
        Firma el XML.

        El padre del target (DPS) se copia a un árbol propio, se firma con
        signxml y se reinserta en su posición original, de modo que la
        envoltura NFSe/infNFSe queda fuera de la firma.

        Raises:
            NfseSignatureError: Si falla el parseo o la firma
        """
        try:
            root = parse_xml(xml)
        except etree.XMLSyntaxError as e:
            raise NfseSignatureError(f"XML inválido para firma: {e}")

        target, target_id = resolve_signing_target(root)
        signed_parent_holder = target.getparent()
        grandparent = signed_parent_holder.getparent()

        signer = XMLSigner(
            method=methods.enveloped,
            signature_algorithm="rsa-sha256",
            digest_algorithm="sha256",
            c14n_algorithm=C14N_ALGORITHM,
        )
        detached_parent = copy.deepcopy(signed_parent_holder)
        try:
            signed = signer.sign(
                detached_parent,
                key=self.bundle.key_pem,
                cert=self.bundle.cert_pem.decode("ascii"),
                reference_uri=f"#{target_id}",
            )
        except Exception as e:
            raise NfseSignatureError(f"Error al firmar XML: {e}")

        if grandparent is None:
            result_root = signed
        else:
            grandparent.replace(signed_parent_holder, signed)
            result_root = root

        logger.info(f"XML firmado: Reference URI=#{target_id}")
        return etree.tostring(result_root, encoding="unicode")


class SignatureStage:
    """
    Etapa de firma condicional previa al envío.

    Modos:
        none     -> pasa el XML sin cambios
        optional -> firma si hay certificado; si falla, continúa sin firma
        required -> firma o lanza NfseSignatureError
    """

    def process(
        self,
        xml: str,
        signature_mode: str,
        certificate: Optional[CertificateBundle] = None,
    ) -> str:
        if signature_mode not in SIGNATURE_MODES:
            raise NfseSignatureError(f"signature_mode inválido: {signature_mode}")

        if signature_mode == "none":
            return xml

        if certificate is None:
            if signature_mode == "required":
                raise NfseSignatureError(
                    "Certificado digital obrigatório para assinatura XML (signature_mode=required)"
                )
            logger.warning("Sin certificado: DPS se envía sin firma (signature_mode=optional)")
            return self._finalize(xml)

        try:
            signed = XmlSigner(certificate).sign(xml)
        except NfseSignatureError as e:
            if signature_mode == "required":
                raise
            logger.warning(f"Firma falló, se continúa sin firma (signature_mode=optional): {e.message}")
            return self._finalize(xml)

        return self._finalize(signed)

    @staticmethod
    def _finalize(xml: str) -> str:
        """Prolog UTF-8 canónico + verificación UTF-8 de punta a punta"""
        return ensure_utf8_prolog(xml)
