"""
Módulo cliente para integración con NFSe Nacional (Sefin / ADN)
Brasil - Declaração de Prestação de Serviço (DPS)
"""
from .config import NfseConfig, get_nfse_config
from .client import NfseNacionalClient
from .models import (
    CatalogLookup,
    DpsDocument,
    DpsRequest,
    TransmissionResult,
    ValidationOutcome,
)
from .validator import DpsValidator
from .xml_generator import DpsBuilder
from .xml_signer import SignatureStage, XmlSigner
from .transport import TransportClient
from .response_parser import ResponseInterpreter
from .catalog import CatalogGateway
from .cache import FileCacheStore
from .certificates import CertificateBundle, StaticCertificateProvider, EnvCertificateProvider
from .exceptions import (
    NfseException,
    NfseConfigError,
    NfseValidationError,
    NfseEncodingError,
    NfseSignatureError,
    NfseTransportError,
    CertificateError,
)

__all__ = [
    'NfseConfig',
    'get_nfse_config',
    'NfseNacionalClient',
    'CatalogLookup',
    'DpsDocument',
    'DpsRequest',
    'TransmissionResult',
    'ValidationOutcome',
    'DpsValidator',
    'DpsBuilder',
    'SignatureStage',
    'XmlSigner',
    'TransportClient',
    'ResponseInterpreter',
    'CatalogGateway',
    'FileCacheStore',
    'CertificateBundle',
    'StaticCertificateProvider',
    'EnvCertificateProvider',
    'NfseException',
    'NfseConfigError',
    'NfseValidationError',
    'NfseEncodingError',
    'NfseSignatureError',
    'NfseTransportError',
    'CertificateError',
]
