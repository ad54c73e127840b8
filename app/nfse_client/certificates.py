"""
Certificado digital (ICP-Brasil A1) para firma XML y mTLS

Soporta PKCS#12 (.pfx/.p12) o par PEM (certificado + clave).
El material PEM se expone en memoria; para mTLS se escribe en archivos
temporales que se eliminan siempre al salir del contexto.
"""
import logging
import os
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from .exceptions import CertificateError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CertificateBundle:
    """Certificado + clave privada en PEM (clave sin cifrar, solo en memoria)"""
    cert_pem: bytes
    key_pem: bytes
    chain_pem: List[bytes] = field(default_factory=list)

    @classmethod
    def from_pkcs12(cls, p12_path: str, password: Optional[str] = None) -> "CertificateBundle":
        """
        Carga un PKCS#12.

        Raises:
            CertificateError: Si el archivo no existe, la contraseña es inválida
                o falta certificado/clave
        """
        path = Path(p12_path)
        if not path.is_file():
            raise CertificateError(f"Certificado no encontrado: {p12_path}")
        try:
            key, cert, additional = pkcs12.load_key_and_certificates(
                path.read_bytes(),
                password.encode("utf-8") if password else None,
            )
        except ValueError as e:
            raise CertificateError(f"Error al cargar PKCS#12 ({path.name}): {e}")
        if key is None:
            raise CertificateError("No se pudo extraer la clave privada del certificado")
        if cert is None:
            raise CertificateError("No se pudo extraer el certificado del archivo")
        return cls(
            cert_pem=cert.public_bytes(serialization.Encoding.PEM),
            key_pem=key.private_bytes(
                serialization.Encoding.PEM,
                serialization.PrivateFormat.PKCS8,
                serialization.NoEncryption(),
            ),
            chain_pem=[c.public_bytes(serialization.Encoding.PEM) for c in (additional or [])],
        )

    @classmethod
    def from_pem_files(
        cls,
        cert_path: str,
        key_path: str,
        key_password: Optional[str] = None,
    ) -> "CertificateBundle":
        """Carga certificado y clave PEM separados"""
        for p in (cert_path, key_path):
            if not Path(p).is_file():
                raise CertificateError(f"Archivo PEM no encontrado: {p}")
        return cls.from_pem_bytes(
            Path(cert_path).read_bytes(),
            Path(key_path).read_bytes(),
            key_password,
        )

    @classmethod
    def from_pem_bytes(
        cls,
        cert_pem: bytes,
        key_pem: bytes,
        key_password: Optional[str] = None,
    ) -> "CertificateBundle":
        try:
            x509.load_pem_x509_certificate(cert_pem)
            key = serialization.load_pem_private_key(
                key_pem,
                password=key_password.encode("utf-8") if key_password else None,
            )
        except (ValueError, TypeError) as e:
            raise CertificateError(f"PEM inválido: {e}")
        if key_password:
            key_pem = key.private_bytes(
                serialization.Encoding.PEM,
                serialization.PrivateFormat.PKCS8,
                serialization.NoEncryption(),
            )
        return cls(cert_pem=cert_pem, key_pem=key_pem)

    @property
    def certificate(self) -> x509.Certificate:
        return x509.load_pem_x509_certificate(self.cert_pem)

    @property
    def not_valid_before(self) -> datetime:
        return self.certificate.not_valid_before_utc

    @property
    def not_valid_after(self) -> datetime:
        return self.certificate.not_valid_after_utc

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.not_valid_before <= now <= self.not_valid_after

    def info(self) -> Dict[str, Any]:
        """Metadatos del certificado (sin material privado)"""
        cert = self.certificate
        return {
            "subject": cert.subject.rfc4514_string(),
            "issuer": cert.issuer.rfc4514_string(),
            "serial_number": str(cert.serial_number),
            "not_valid_before": self.not_valid_before.isoformat(),
            "not_valid_after": self.not_valid_after.isoformat(),
        }


class StaticCertificateProvider:
    """Provider con un bundle fijo (o None: sin certificado)"""

    def __init__(self, bundle: Optional[CertificateBundle] = None):
        self._bundle = bundle

    def get_certificate(self) -> Optional[CertificateBundle]:
        return self._bundle


class EnvCertificateProvider:
    """Provider que carga (una vez) el certificado desde variables de entorno"""

    def __init__(self):
        self._loaded = False
        self._bundle: Optional[CertificateBundle] = None

    def get_certificate(self) -> Optional[CertificateBundle]:
        if not self._loaded:
            self._bundle = get_certificate_from_env()
            self._loaded = True
        return self._bundle


def get_certificate_from_env() -> Optional[CertificateBundle]:
    """
    Obtiene el certificado desde el entorno.

    NFSE_CERT_PATH + NFSE_CERT_PASSWORD (PKCS#12) o
    NFSE_CERT_PEM_PATH + NFSE_KEY_PEM_PATH (+ NFSE_KEY_PASSWORD).

    Returns:
        CertificateBundle o None si no hay certificado configurado
    """
    p12_path = os.getenv("NFSE_CERT_PATH")
    if p12_path:
        return CertificateBundle.from_pkcs12(p12_path, os.getenv("NFSE_CERT_PASSWORD") or None)

    cert_pem_path = os.getenv("NFSE_CERT_PEM_PATH")
    key_pem_path = os.getenv("NFSE_KEY_PEM_PATH")
    if cert_pem_path and key_pem_path:
        return CertificateBundle.from_pem_files(
            cert_pem_path, key_pem_path, os.getenv("NFSE_KEY_PASSWORD") or None
        )

    logger.debug("Sin certificado configurado en el entorno")
    return None


def _write_private_temp(data: bytes, suffix: str) -> str:
    fd, path = tempfile.mkstemp(prefix="nfse_", suffix=suffix)
    try:
        with os.fdopen(fd, "wb") as f:
            os.chmod(path, 0o600)
            f.write(data)
    except OSError:
        try:
            os.unlink(path)
        except OSError:
            pass
        raise
    return path


@contextmanager
def temp_pem_files(bundle: CertificateBundle) -> Iterator[Tuple[str, str]]:
    """
    Escribe cert/key PEM en archivos temporales (0600) y los elimina al salir,
    también ante excepciones.

    Yields:
        (cert_path, key_path)
    """
    paths: List[str] = []
    try:
        cert_pem = bundle.cert_pem + b"".join(bundle.chain_pem)
        paths.append(_write_private_temp(cert_pem, "_cert.pem"))
        paths.append(_write_private_temp(bundle.key_pem, "_key.pem"))
        logger.debug(f"PEM temporales creados: {[Path(p).name for p in paths]}")
        yield paths[0], paths[1]
    finally:
        for path in paths:
            try:
                os.unlink(path)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"No se pudo eliminar PEM temporal {Path(path).name}: {e}")
