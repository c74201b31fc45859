"""
Contratos de los almacenes externos que consume el pipeline.
Las implementaciones sobre PostgreSQL están en `db.py`.
"""
from abc import ABC, abstractmethod
from typing import List, Optional

from .models import CDR, Certificado, Comprobante, ComunicacionBaja, Empresa, EstadoComprobante


class DocumentStore(ABC):

    @abstractmethod
    def save(self, comprobante: Comprobante) -> None:
        """Inserta un comprobante nuevo. Nunca sobrescribe uno existente."""

    @abstractmethod
    def get_by_tenant_and_number(self, empresa_ruc: str, numero: str) -> Optional[Comprobante]:
        """Solo devuelve comprobantes de la empresa indicada."""

    @abstractmethod
    def set_state(self, empresa_ruc: str, numero: str, estado: EstadoComprobante) -> None:
        """
        Cambia el estado si la transición es válida (ver models.TRANSICIONES).
        Lanza DocumentNotFoundError o InvalidStateTransitionError.
        """

    @abstractmethod
    def set_signed_xml(self, empresa_ruc: str, numero: str, xml_firmado: str) -> None:
        """Guarda el XML firmado solo si aún no tiene uno; si no, AlreadySignedError."""

    @abstractmethod
    def attach_receipt(
        self,
        empresa_ruc: str,
        numero: str,
        cdr: CDR,
        estado: EstadoComprobante,
        motivo_rechazo: Optional[str] = None,
    ) -> None:
        """Adjunta el CDR y pasa el comprobante a un estado terminal, en una sola operación."""

    @abstractmethod
    def list_by_state(self, empresa_ruc: str, estado: EstadoComprobante) -> List[Comprobante]:
        pass


class ComunicacionStore(ABC):
    """Comunicaciones de baja. Se guardan antes de enviarlas para no perder el ticket."""

    @abstractmethod
    def save(self, comunicacion: ComunicacionBaja) -> None:
        """Inserta una comunicación nueva. Nunca sobrescribe una existente."""

    @abstractmethod
    def get_by_tenant_and_number(self, empresa_ruc: str, numero: str) -> Optional[ComunicacionBaja]:
        pass

    @abstractmethod
    def get_by_ticket(self, empresa_ruc: str, ticket: str) -> Optional[ComunicacionBaja]:
        pass

    @abstractmethod
    def set_signed_xml(self, empresa_ruc: str, numero: str, xml_firmado: str) -> None:
        """Igual que en DocumentStore: la firma se guarda una sola vez."""

    @abstractmethod
    def set_ticket(self, empresa_ruc: str, numero: str, ticket: str) -> None:
        pass

    @abstractmethod
    def attach_receipt(self, empresa_ruc: str, numero: str, cdr: CDR) -> None:
        """Adjunta el CDR final del ticket. Si ya tenía uno, InvalidStateTransitionError."""


class CounterStore(ABC):

    @abstractmethod
    def atomic_increment(self, empresa_ruc: str, tipo: str, serie: str) -> int:
        """
        Incrementa y devuelve el contador en una sola operación atómica.
        El primer valor devuelto para una serie nueva es 1.
        """


class CertificateStore(ABC):

    @abstractmethod
    def get_by_tenant(self, empresa_ruc: str) -> Optional[Certificado]:
        pass

    @abstractmethod
    def put(self, certificado: Certificado) -> None:
        pass


class EmpresaStore(ABC):

    @abstractmethod
    def get_by_ruc(self, ruc: str) -> Optional[Empresa]:
        pass

    @abstractmethod
    def save(self, empresa: Empresa) -> None:
        pass
