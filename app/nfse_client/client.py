"""
Cliente NFSe Nacional: orquesta validación -> DPS -> firma -> envío -> parseo
"""
import logging
from typing import Any, Dict, Mapping, Optional, Union

from .catalog import CatalogGateway
from .certificates import CertificateBundle, EnvCertificateProvider
from .config import NfseConfig, get_nfse_config
from .exceptions import NfseValidationError
from .models import CatalogLookup, DpsDocument, DpsRequest, TransmissionResult, ValidationOutcome
from .response_parser import ResponseInterpreter
from .transport import HttpClient, TransportClient
from .validator import DpsValidator
from .xml_generator import DpsBuilder, build_simple_envelope
from .xml_signer import SignatureStage

logger = logging.getLogger(__name__)

Payload = Union[DpsRequest, Mapping[str, Any]]


def _require(**values: Any) -> None:
    for name, value in values.items():
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValueError(f"{name} é obrigatório")


class NfseNacionalClient:
    """
    Cliente de alto nivel para la API Sefin Nacional

    Args:
        config: NfseConfig (default: get_nfse_config())
        certificate_provider: objeto con get_certificate() -> CertificateBundle | None
        http_client: callable(method, path, body, headers) -> str; reemplaza mTLS
        catalog: CatalogGateway (default: uno nuevo sobre config)
    """

    def __init__(
        self,
        config: Optional[NfseConfig] = None,
        certificate_provider: Any = None,
        http_client: Optional[HttpClient] = None,
        catalog: Optional[CatalogGateway] = None,
    ):
        self.config = config or get_nfse_config()
        self.certificate_provider = certificate_provider or EnvCertificateProvider()
        self.http_client = http_client

        if catalog is None:
            catalog = CatalogGateway(
                self.config,
                http_get=self._catalog_get if http_client is not None else None,
            )
        self.catalog = catalog

        self.validator = DpsValidator(self.config, self.catalog)
        self.builder = DpsBuilder(self.config)
        self.signature_stage = SignatureStage()
        self.interpreter = ResponseInterpreter()

    def _catalog_get(self, path: str) -> str:
        return self.http_client("GET", path, None, {"Accept": "application/json"})

    def _certificate(self) -> Optional[CertificateBundle]:
        return self.certificate_provider.get_certificate()

    def _transport(self) -> TransportClient:
        return TransportClient(self.config, self._certificate(), self.http_client)

    def _send(self, operation: str, xml: str, **path_params: str) -> TransmissionResult:
        raw = self._transport().send(operation, xml, **path_params)
        result = self.interpreter.parse(raw)
        logger.info(f"Operação {operation}: success={result.success} message={result.message}")
        return result

    def lint(self, payload: Payload, check_catalog: bool = True) -> ValidationOutcome:
        """Validación previa (sin envío), con cruce opcional contra el catálogo"""
        return self.validator.validate_against_catalog(payload, check_catalog=check_catalog)

    def build(self, payload: Payload) -> DpsDocument:
        """
        Valida y construye el DPS (sin firmar).

        Raises:
            NfseValidationError: Si el payload es inválido
        """
        request = payload if isinstance(payload, DpsRequest) else DpsRequest.from_dict(payload)
        outcome = self.validator.validate(request)
        if not outcome.valid:
            raise NfseValidationError(outcome.errors, outcome.warnings)
        for warning in outcome.warnings:
            logger.warning(f"DPS: {warning}")
        return self.builder.build(request)

    def prepare(self, payload: Payload) -> str:
        """Valida, construye y firma según signature_mode; devuelve el XML final"""
        document = self.build(payload)
        return self.signature_stage.process(
            document.xml, self.config.signature_mode, self._certificate()
        )

    def emitir(self, payload: Payload) -> TransmissionResult:
        """
        Emite una NFSe a partir del DPS.

        Raises:
            NfseValidationError: Payload inválido (no se envía nada)
            NfseSignatureError: Firma imposible en modo 'required'
            NfseTransportError: Error de red / HTTP no-2xx
        """
        xml = self.prepare(payload)
        return self._send("emitir", xml)

    def consultar(self, chave: str) -> TransmissionResult:
        _require(chave=chave)
        xml = self._envelope("ConsultarNfseExternoEnvio", {"ChaveNfse": chave})
        return self._send("consultar", xml, chave=chave)

    def cancelar(self, chave: str, motivo: str, protocolo: Optional[str] = None) -> TransmissionResult:
        _require(chave=chave, motivo=motivo)
        xml = self._envelope("CancelarNfseEnvio", {
            "ChaveNfse": chave,
            "Motivo": motivo,
            "Protocolo": protocolo or None,
        })
        return self._send("cancelar", xml, chave=chave)

    def substituir(self, chave: str, payload: Payload) -> TransmissionResult:
        """Sustituye la NFSe `chave` por una nueva generada desde `payload`"""
        _require(chave=chave)
        request = payload if isinstance(payload, DpsRequest) else DpsRequest.from_dict(payload)
        outcome = self.validator.validate(request)
        if not outcome.valid:
            raise NfseValidationError(outcome.errors, outcome.warnings)
        substituta = self.builder.build_dps_element(request)
        xml = self._envelope("SubstituirNfseEnvio", {
            "NfseOriginal": chave,
            "NfseSubstituta": substituta,
        })
        xml = self.signature_stage.process(xml, self.config.signature_mode, self._certificate())
        return self._send("substituir", xml, chave=chave)

    def consultar_por_rps(self, numero: str, serie: str, tipo: str = "1") -> TransmissionResult:
        _require(numero=numero, serie=serie, tipo=tipo)
        xml = self._envelope("ConsultarNfsePorRpsEnvio", {
            "Numero": str(numero),
            "Serie": str(serie),
            "Tipo": str(tipo),
        })
        return self._send("consultar_rps", xml)

    def consultar_lote(self, protocolo: str) -> TransmissionResult:
        _require(protocolo=protocolo)
        xml = self._envelope("ConsultarLoteRpsEnvio", {"Protocolo": protocolo})
        return self._send("consultar_lote", xml, protocolo=protocolo)

    def baixar_xml(self, chave: str) -> TransmissionResult:
        _require(chave=chave)
        xml = self._envelope("DownloadNfseEnvio", {"Tipo": "xml", "ChaveNfse": chave})
        return self._send("baixar_xml", xml, chave=chave)

    def baixar_danfse(self, chave: str) -> str:
        """Body crudo del DANFSe (sin renderizar)"""
        _require(chave=chave)
        xml = self._envelope("DownloadNfseEnvio", {"Tipo": "danfse", "ChaveNfse": chave})
        return self._transport().send("baixar_danfse", xml, chave=chave)

    def listar_municipios(self, force_refresh: bool = False) -> CatalogLookup:
        return self.catalog.list_municipalities(force_refresh)

    def consultar_aliquotas(
        self,
        codigo_municipio: str,
        codigo_servico: Optional[str] = None,
        competencia: Optional[str] = None,
        force_refresh: bool = False,
    ) -> CatalogLookup:
        return self.catalog.get_aliquot_parametrization(
            codigo_municipio, codigo_servico, competencia, force_refresh
        )

    def consultar_convenio(self, codigo_municipio: str, force_refresh: bool = False) -> CatalogLookup:
        return self.catalog.get_municipal_agreement(codigo_municipio, force_refresh)

    def _envelope(self, root_name: str, payload: Dict[str, Any]) -> str:
        return build_simple_envelope(
            root_name,
            payload,
            namespace=self.config.xml_namespace,
            versao=self.config.dps_versao,
        )
