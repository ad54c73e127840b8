"""
Excepciones personalizadas para el cliente NFSe Nacional
"""
from typing import List, Optional


class NfseException(Exception):
    """Excepción base para errores NFSe"""
    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        self.code = code
        super().__init__(self.message)


class NfseConfigError(NfseException):
    """Configuración inválida (endpoint, esquema de URL, modo de firma, etc.)"""
    pass


class NfseValidationError(NfseException):
    """Errores de validación del payload DPS (bloquean el envío)"""
    def __init__(self, errors: List[str], warnings: Optional[List[str]] = None):
        self.errors = list(errors)
        self.warnings = list(warnings or [])
        message = "Payload DPS inválido: " + "; ".join(self.errors)
        super().__init__(message, "validation")


class NfseEncodingError(NfseException):
    """El payload no pudo normalizarse a UTF-8 válido"""
    pass


class NfseSignatureError(NfseException):
    """Error en la firma digital (fatal solo en modo 'required')"""
    pass


class NfseTransportError(NfseException):
    """Error de red o status HTTP no-2xx"""
    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        correlation_id: Optional[str] = None,
        http_status: Optional[int] = None,
        body_excerpt: Optional[str] = None,
    ):
        self.operation = operation
        self.correlation_id = correlation_id
        self.http_status = http_status
        self.body_excerpt = body_excerpt
        if correlation_id:
            message = f"{message} (operação={operation}, correlation_id={correlation_id})"
        super().__init__(message, str(http_status) if http_status else None)


class CertificateError(NfseException):
    """Error al cargar certificado digital (PKCS#12 o PEM)"""
    pass
