import io
import threading
import zipfile
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace
from typing import Dict, List, Optional, Tuple

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import BestAvailableEncryption, pkcs12
from cryptography.x509.oid import NameOID

from sunat_cpe.cdr import ResponseReconciler
from sunat_cpe.emision import EmisionService
from sunat_cpe.errors import (
    AlreadySignedError,
    DocumentNotFoundError,
    InvalidStateTransitionError,
    StorageError,
)
from sunat_cpe.firma import Signer
from sunat_cpe.models import (
    CDR,
    Certificado,
    Comprobante,
    ComunicacionBaja,
    Credenciales,
    Direccion,
    Empresa,
    EstadoComprobante,
    Item,
    Receptor,
    TRANSICIONES,
)
from sunat_cpe.numeracion import NumberAllocator
from sunat_cpe.reintentos import RetryCoordinator
from sunat_cpe.repositorios import (
    CertificateStore,
    ComunicacionStore,
    CounterStore,
    DocumentStore,
    EmpresaStore,
)
from sunat_cpe.sunat import SubmissionClient
from sunat_cpe.ubl import DocumentBuilder

RUC = "20123456789"
OTRO_RUC = "20987654321"
PASSWORD_CERT = "clave123"


# ——————————————————————————————————————————————————————————————
# Almacenes en memoria
# ——————————————————————————————————————————————————————————————
class InMemoryDocumentStore(DocumentStore):

    def __init__(self):
        self.docs: Dict[Tuple[str, str], Comprobante] = {}
        self.historial: List[Tuple[str, EstadoComprobante]] = []
        self.fallar_save = False
        self._lock = threading.Lock()

    def save(self, comprobante):
        if self.fallar_save:
            raise StorageError("base de datos caída")
        key = (comprobante.empresa_ruc, comprobante.numero)
        with self._lock:
            if key in self.docs:
                raise StorageError(f"{comprobante.numero} ya existe")
            self.docs[key] = comprobante.model_copy(deep=True)

    def get_by_tenant_and_number(self, empresa_ruc, numero):
        doc = self.docs.get((empresa_ruc, numero))
        return doc.model_copy(deep=True) if doc else None

    def _get(self, empresa_ruc, numero) -> Comprobante:
        doc = self.docs.get((empresa_ruc, numero))
        if doc is None:
            raise DocumentNotFoundError(numero)
        return doc

    def set_state(self, empresa_ruc, numero, estado):
        with self._lock:
            doc = self._get(empresa_ruc, numero)
            if estado not in TRANSICIONES[doc.estado]:
                raise InvalidStateTransitionError(f"{doc.estado.value} -> {estado.value}")
            doc.estado = estado
            self.historial.append((numero, estado))

    def set_signed_xml(self, empresa_ruc, numero, xml_firmado):
        with self._lock:
            doc = self._get(empresa_ruc, numero)
            if doc.xml_firmado is not None:
                raise AlreadySignedError(numero)
            doc.xml_firmado = xml_firmado

    def attach_receipt(self, empresa_ruc, numero, cdr, estado, motivo_rechazo=None):
        with self._lock:
            doc = self._get(empresa_ruc, numero)
            if estado not in TRANSICIONES[doc.estado] or doc.cdr is not None:
                raise InvalidStateTransitionError(f"{doc.estado.value} -> {estado.value}")
            doc.estado = estado
            doc.cdr = cdr
            doc.motivo_rechazo = motivo_rechazo
            self.historial.append((numero, estado))

    def list_by_state(self, empresa_ruc, estado):
        return [d.model_copy(deep=True) for (ruc, _), d in self.docs.items()
                if ruc == empresa_ruc and d.estado == estado]


class InMemoryComunicacionStore(ComunicacionStore):

    def __init__(self):
        self.comunicaciones: Dict[Tuple[str, str], ComunicacionBaja] = {}
        self.fallar_save = False
        self._lock = threading.Lock()

    def save(self, comunicacion):
        if self.fallar_save:
            raise StorageError("base de datos caída")
        key = (comunicacion.empresa_ruc, comunicacion.numero)
        with self._lock:
            if key in self.comunicaciones:
                raise StorageError(f"{comunicacion.numero} ya existe")
            self.comunicaciones[key] = comunicacion.model_copy(deep=True)

    def get_by_tenant_and_number(self, empresa_ruc, numero):
        com = self.comunicaciones.get((empresa_ruc, numero))
        return com.model_copy(deep=True) if com else None

    def get_by_ticket(self, empresa_ruc, ticket):
        for (ruc, _), com in self.comunicaciones.items():
            if ruc == empresa_ruc and com.ticket == ticket:
                return com.model_copy(deep=True)
        return None

    def _get(self, empresa_ruc, numero) -> ComunicacionBaja:
        com = self.comunicaciones.get((empresa_ruc, numero))
        if com is None:
            raise DocumentNotFoundError(numero)
        return com

    def set_signed_xml(self, empresa_ruc, numero, xml_firmado):
        with self._lock:
            com = self._get(empresa_ruc, numero)
            if com.xml_firmado is not None:
                raise AlreadySignedError(numero)
            com.xml_firmado = xml_firmado

    def set_ticket(self, empresa_ruc, numero, ticket):
        with self._lock:
            self._get(empresa_ruc, numero).ticket = ticket

    def attach_receipt(self, empresa_ruc, numero, cdr):
        with self._lock:
            com = self._get(empresa_ruc, numero)
            if com.cdr is not None:
                raise InvalidStateTransitionError(f"{numero} ya tiene CDR")
            com.cdr = cdr


class InMemoryCounterStore(CounterStore):
    """El lock hace de UPDATE condicional atómico de la base."""

    def __init__(self):
        self.valores: Dict[Tuple[str, str, str], int] = {}
        self.caido = False
        self.llamadas = 0
        self._lock = threading.Lock()

    def atomic_increment(self, empresa_ruc, tipo, serie):
        self.llamadas += 1
        if self.caido:
            raise StorageError("contador no disponible")
        with self._lock:
            key = (empresa_ruc, tipo, serie)
            self.valores[key] = self.valores.get(key, 0) + 1
            return self.valores[key]


class InMemoryCertificateStore(CertificateStore):

    def __init__(self):
        self.certs: Dict[str, Certificado] = {}

    def get_by_tenant(self, empresa_ruc):
        return self.certs.get(empresa_ruc)

    def put(self, certificado):
        self.certs[certificado.ruc] = certificado


class InMemoryEmpresaStore(EmpresaStore):

    def __init__(self):
        self.empresas: Dict[str, Empresa] = {}

    def get_by_ruc(self, ruc):
        return self.empresas.get(ruc)

    def save(self, empresa):
        self.empresas[empresa.ruc] = empresa


# ——————————————————————————————————————————————————————————————
# SOAP simulado
# ——————————————————————————————————————————————————————————————
def zip_cdr(codigo: str, descripcion: str, nombre: str = "R-20123456789-03-B001-00000001.xml") -> bytes:
    xml = (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<ar:ApplicationResponse'
        ' xmlns:ar="urn:oasis:names:specification:ubl:schema:xsd:ApplicationResponse-2"'
        ' xmlns:cac="urn:oasis:names:specification:ubl:schema:xsd:CommonAggregateComponents-2"'
        ' xmlns:cbc="urn:oasis:names:specification:ubl:schema:xsd:CommonBasicComponents-2">'
        '<cac:DocumentResponse><cac:Response>'
        f'<cbc:ResponseCode>{codigo}</cbc:ResponseCode>'
        f'<cbc:Description>{descripcion}</cbc:Description>'
        '</cac:Response></cac:DocumentResponse>'
        '</ar:ApplicationResponse>'
    )
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
        zf.writestr(nombre, xml.encode("utf-8"))
    return buffer.getvalue()


class StubService:
    """
    Reemplaza `client.service` de zeep. Cada respuesta de la cola es un
    valor a devolver o una excepción a lanzar.
    """

    def __init__(self):
        self.respuestas: List = []
        self.llamadas: List[Tuple[str, dict]] = []

    def _responder(self, operacion, kwargs):
        self.llamadas.append((operacion, kwargs))
        respuesta = self.respuestas.pop(0)
        if isinstance(respuesta, BaseException):
            raise respuesta
        return respuesta

    def sendBill(self, **kwargs):
        return self._responder("sendBill", kwargs)

    def sendSummary(self, **kwargs):
        return self._responder("sendSummary", kwargs)

    def getStatus(self, **kwargs):
        return self._responder("getStatus", kwargs)


# ——————————————————————————————————————————————————————————————
# Fixtures
# ——————————————————————————————————————————————————————————————
def _pkcs12(cn: str, desde: datetime, hasta: datetime) -> bytes:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    nombre = x509.Name([
        x509.NameAttribute(NameOID.COMMON_NAME, cn),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "CA de Pruebas"),
    ])
    cert = (
        x509.CertificateBuilder()
        .subject_name(nombre)
        .issuer_name(nombre)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(desde)
        .not_valid_after(hasta)
        .sign(key, hashes.SHA256())
    )
    return pkcs12.serialize_key_and_certificates(
        b"sunat", key, cert, None, BestAvailableEncryption(PASSWORD_CERT.encode())
    )


@pytest.fixture(scope="session")
def pfx_vigente() -> bytes:
    ahora = datetime.now(timezone.utc)
    return _pkcs12(RUC, ahora - timedelta(days=1), ahora + timedelta(days=365))


@pytest.fixture(scope="session")
def pfx_vencido() -> bytes:
    ahora = datetime.now(timezone.utc)
    return _pkcs12(RUC, ahora - timedelta(days=400), ahora - timedelta(days=35))


@pytest.fixture
def certificado(pfx_vigente) -> Certificado:
    ahora = datetime.now(timezone.utc)
    return Certificado(
        ruc=RUC,
        archivo=pfx_vigente,
        password=PASSWORD_CERT,
        emitido=ahora - timedelta(days=1),
        vence=ahora + timedelta(days=365),
        emisor="CN=CA de Pruebas",
    )


@pytest.fixture
def empresa() -> Empresa:
    return Empresa(
        ruc=RUC,
        razon_social="Comercial Andina S.A.C.",
        nombre_comercial="Andina",
        direccion=Direccion(direccion="Av. Larco 123", ubigeo="150122", distrito="Miraflores"),
        credenciales=Credenciales(ruc=RUC, usuario="MODDATOS", password="moddatos"),
    )


@pytest.fixture
def receptor_dni() -> Receptor:
    return Receptor(tipo_documento="1", numero_documento="12345678", nombre="Juan Pérez")


@pytest.fixture
def receptor_ruc() -> Receptor:
    return Receptor(
        tipo_documento="6",
        numero_documento=OTRO_RUC,
        nombre="Distribuidora <Norte> & Cía",
        direccion=Direccion(direccion="Jr. Unión 456"),
    )


@pytest.fixture
def items() -> List[Item]:
    return [
        Item(codigo="P001", descripcion="Arroz 5kg", cantidad=Decimal("2"), precio_unitario=Decimal("25.00"),
             afectacion_igv="10", igv=Decimal("7.63"), total=Decimal("42.37")),
        Item(codigo="P002", descripcion="Libro", cantidad=Decimal("1"), precio_unitario=Decimal("30.00"),
             afectacion_igv="20", igv=Decimal("0.00"), total=Decimal("30.00")),
    ]


@pytest.fixture
def documentos() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def comunicaciones() -> InMemoryComunicacionStore:
    return InMemoryComunicacionStore()


@pytest.fixture
def counters() -> InMemoryCounterStore:
    return InMemoryCounterStore()


@pytest.fixture
def certificados(certificado) -> InMemoryCertificateStore:
    store = InMemoryCertificateStore()
    store.put(certificado)
    return store


@pytest.fixture
def empresas(empresa) -> InMemoryEmpresaStore:
    store = InMemoryEmpresaStore()
    store.save(empresa)
    return store


@pytest.fixture
def builder(counters, documentos) -> DocumentBuilder:
    return DocumentBuilder(NumberAllocator(counters), documentos)


@pytest.fixture
def signer(certificados, documentos) -> Signer:
    return Signer(certificados, documentos)


@pytest.fixture
def stub_service() -> StubService:
    return StubService()


@pytest.fixture
def client(stub_service) -> SubmissionClient:
    return SubmissionClient(
        "http://sunat.invalid/billService?wsdl",
        client_factory=lambda credenciales: SimpleNamespace(service=stub_service),
    )


@pytest.fixture
def esperas() -> List[float]:
    return []


@pytest.fixture
def retry(documentos, esperas) -> RetryCoordinator:
    return RetryCoordinator(documentos, max_attempts=4, sleep=esperas.append)


@pytest.fixture
def emision(empresas, documentos, certificados, builder, signer, client, retry, tmp_path) -> EmisionService:
    return EmisionService(
        empresas, documentos, certificados, builder, signer, client, retry,
        ResponseReconciler(documentos), pdf_dir=str(tmp_path / "comprobantes"),
    )


@pytest.fixture
def cdr_factory():
    def _cdr(codigo: str, mensaje: str = "", ticket: Optional[str] = None) -> CDR:
        return CDR(codigo=codigo, mensaje=mensaje, fecha_recepcion=datetime.now(timezone.utc), ticket=ticket)
    return _cdr


@pytest.fixture
def cdr_zip():
    return zip_cdr
