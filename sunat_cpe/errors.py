"""
Jerarquía de errores del pipeline de comprobantes.

Cada categoría tiene su propia clase base para que quien llama decida
(reintentar, rechazar, reportar) solo por el tipo de la excepción.
"""
from typing import List, Optional


class CPEError(Exception):
    """Raíz de todos los errores del servicio."""


# ——————————————————————————————————————————————————————————————
# (a) Entrada / validación
# ——————————————————————————————————————————————————————————————
class ValidationError(CPEError):
    def __init__(self, errores: List[str]):
        self.errores = list(errores)
        super().__init__("; ".join(self.errores) or "Datos inválidos")


class InvalidSeriesError(ValidationError):
    def __init__(self, serie: str, tipo: str):
        self.serie = serie
        self.tipo = tipo
        super().__init__([f"La serie {serie!r} no es válida para el tipo de comprobante {tipo}"])


# ——————————————————————————————————————————————————————————————
# (b) Certificado
# ——————————————————————————————————————————————————————————————
class CertificateError(CPEError):
    pass


class CertificateNotFoundError(CertificateError):
    pass


class CertificateExpiredError(CertificateError):
    pass


class CertificateMismatchError(CertificateError):
    pass


# ——————————————————————————————————————————————————————————————
# (c) Firma
# ——————————————————————————————————————————————————————————————
class SigningError(CPEError):
    pass


class EmptyDocumentError(SigningError):
    pass


class AlreadySignedError(SigningError):
    pass


# ——————————————————————————————————————————————————————————————
# (d) / (e) Envío a SUNAT
# ——————————————————————————————————————————————————————————————
class SubmissionError(CPEError):
    pass


class TransientError(SubmissionError):
    """Falla de transporte (timeout, conexión). Es la única que se reintenta."""


class RemoteFaultError(SubmissionError):
    def __init__(self, fault: str, code: Optional[str] = None):
        self.fault = fault
        self.code = code
        super().__init__(f"Error SOAP de SUNAT: {fault}")


class NoReceiptError(SubmissionError):
    pass


# ——————————————————————————————————————————————————————————————
# Almacenamiento
# ——————————————————————————————————————————————————————————————
class StorageError(CPEError):
    pass


class AllocationError(StorageError):
    pass


class PersistenceError(StorageError):
    """Se consumió un número pero el comprobante no quedó guardado."""

    def __init__(self, mensaje: str, numero: Optional[str] = None):
        self.numero = numero
        super().__init__(mensaje)


class DocumentNotFoundError(StorageError):
    pass


class InvalidStateTransitionError(StorageError):
    pass


class DocumentNotAcceptedError(CPEError):
    pass


class EmpresaNotFoundError(StorageError):
    pass
