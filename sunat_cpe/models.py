from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

CENTIMO = Decimal("0.01")


def round2(valor) -> Decimal:
    """Redondeo a 2 decimales, mitad hacia arriba (no el bancario de Python)."""
    return Decimal(str(valor)).quantize(CENTIMO, rounding=ROUND_HALF_UP)


class TipoComprobante(str, Enum):
    FACTURA = "01"
    BOLETA = "03"
    NOTA_CREDITO = "07"
    NOTA_DEBITO = "08"


class EstadoComprobante(str, Enum):
    PENDIENTE = "PENDIENTE"
    ENVIADO = "ENVIADO"
    ACEPTADO = "ACEPTADO"
    RECHAZADO = "RECHAZADO"


class Moneda(str, Enum):
    PEN = "PEN"
    USD = "USD"


# Estado actual -> estados a los que puede pasar
TRANSICIONES: Dict[EstadoComprobante, FrozenSet[EstadoComprobante]] = {
    EstadoComprobante.PENDIENTE: frozenset({EstadoComprobante.ENVIADO}),
    EstadoComprobante.ENVIADO: frozenset({
        EstadoComprobante.ENVIADO,
        EstadoComprobante.PENDIENTE,
        EstadoComprobante.ACEPTADO,
        EstadoComprobante.RECHAZADO,
    }),
    EstadoComprobante.ACEPTADO: frozenset(),
    EstadoComprobante.RECHAZADO: frozenset(),
}

ESTADOS_TERMINALES = frozenset({EstadoComprobante.ACEPTADO, EstadoComprobante.RECHAZADO})


def estados_previos(nuevo: EstadoComprobante) -> List[EstadoComprobante]:
    """Estados desde los que se puede llegar a `nuevo`."""
    return [actual for actual, destinos in TRANSICIONES.items() if nuevo in destinos]


class Direccion(BaseModel):
    direccion: str
    ubigeo: Optional[str] = None
    departamento: Optional[str] = None
    provincia: Optional[str] = None
    distrito: Optional[str] = None
    urbanizacion: Optional[str] = None
    codigo_pais: str = "PE"


class Emisor(BaseModel):
    """Copia de los datos del emisor al momento de crear el comprobante."""
    ruc: str
    razon_social: str
    nombre_comercial: str
    direccion: Direccion


class Receptor(BaseModel):
    tipo_documento: str   # catálogo 06: 1=DNI, 6=RUC, ...
    numero_documento: str
    nombre: str
    direccion: Optional[Direccion] = None


class Item(BaseModel):
    codigo: str
    descripcion: str
    cantidad: Decimal
    unidad_medida: str = "NIU"  # catálogo 03
    precio_unitario: Decimal
    afectacion_igv: str         # catálogo 07
    igv: Decimal = Field(ge=0)
    total: Decimal = Field(ge=0)

    @field_validator("igv", "total")
    @classmethod
    def _dos_decimales(cls, v: Decimal) -> Decimal:
        if v != round2(v):
            raise ValueError("debe tener máximo 2 decimales")
        return round2(v)


class Referencia(BaseModel):
    """Comprobante al que afecta una nota de crédito o débito."""
    numero: str
    tipo: TipoComprobante
    codigo_motivo: str  # catálogo 09 (crédito) o 10 (débito)
    descripcion: str


class CDR(BaseModel):
    """Constancia de recepción de SUNAT. No se modifica una vez adjunta."""
    model_config = ConfigDict(frozen=True)

    codigo: str
    mensaje: str
    xml: str = ""
    fecha_recepcion: datetime
    ticket: Optional[str] = None  # envíos asíncronos (comunicaciones de baja)


class Comprobante(BaseModel):
    empresa_ruc: str
    numero: str                 # SERIE-CORRELATIVO, ej. B001-00000123
    tipo: TipoComprobante
    fecha: datetime
    emisor: Emisor
    receptor: Receptor
    items: List[Item]
    subtotal: Decimal
    igv: Decimal
    total: Decimal
    moneda: Moneda = Moneda.PEN
    referencia: Optional[Referencia] = None
    xml_original: str
    xml_firmado: Optional[str] = None
    estado: EstadoComprobante = EstadoComprobante.PENDIENTE
    cdr: Optional[CDR] = None
    motivo_rechazo: Optional[str] = None
    fecha_creacion: Optional[datetime] = None
    fecha_actualizacion: Optional[datetime] = None

    @model_validator(mode="after")
    def _total_cuadra(self) -> "Comprobante":
        if self.total != round2(self.subtotal + self.igv):
            raise ValueError(
                f"total {self.total} no coincide con subtotal {self.subtotal} + igv {self.igv}"
            )
        return self

    @property
    def serie(self) -> str:
        return self.numero.split("-", 1)[0]

    @property
    def correlativo(self) -> int:
        return int(self.numero.split("-", 1)[1])


class Certificado(BaseModel):
    ruc: str              # RUC de la empresa dueña del certificado
    archivo: bytes        # PFX / P12
    password: str
    emitido: datetime
    vence: datetime
    emisor: str           # entidad certificadora


class Credenciales(BaseModel):
    """Credenciales SOL de SUNAT."""
    ruc: str
    usuario: str
    password: str


class Empresa(BaseModel):
    ruc: str
    razon_social: str
    nombre_comercial: str
    direccion: Direccion
    credenciales: Credenciales
    activo: bool = True

    def emisor(self) -> Emisor:
        return Emisor(
            ruc=self.ruc,
            razon_social=self.razon_social,
            nombre_comercial=self.nombre_comercial,
            direccion=self.direccion.model_copy(),
        )


class RetryAttemptError(BaseModel):
    intento: int
    fecha: datetime
    error: str
    espera: float


class RetryResult(BaseModel):
    success: bool
    data: Optional[Any] = None
    total_attempts: int
    errors: List[RetryAttemptError] = []


class ResultadoEnvio(BaseModel):
    numero: str
    estado: EstadoComprobante
    cdr: Optional[CDR] = None
    pendiente: bool = False
    intentos: int = 0


class ErrorReproceso(BaseModel):
    numero: str
    error: str


class ResultadoReproceso(BaseModel):
    """Resumen de un reenvío en lote de los comprobantes pendientes de una empresa."""
    empresa_ruc: str
    resultados: List[ResultadoEnvio] = []
    errores: List[ErrorReproceso] = []


class ComunicacionBaja(BaseModel):
    """Comunicación de baja de boletas aceptadas (RA-YYYYMMDD-n)."""
    empresa_ruc: str
    numero: str
    fecha: datetime
    fecha_baja: date
    comprobantes: List[str]
    motivo: str
    xml_original: str
    xml_firmado: Optional[str] = None
    ticket: Optional[str] = None
    # CDR final del ticket, cuando SUNAT terminó de procesarlo
    cdr: Optional[CDR] = None


# ——————————————————————————————————————————————————————————————
# Modelos de la API
# ——————————————————————————————————————————————————————————————
class ComprobanteRequest(BaseModel):
    empresa_ruc: str
    tipo: TipoComprobante
    receptor: Receptor
    items: List[Item]
    moneda: Moneda = Moneda.PEN
    serie: Optional[str] = None
    referencia: Optional[Referencia] = None


class ComprobanteResponse(BaseModel):
    empresa_ruc: str
    numero: str
    tipo: TipoComprobante
    fecha: datetime
    estado: EstadoComprobante
    subtotal: Decimal
    igv: Decimal
    total: Decimal
    moneda: Moneda
    firmado: bool
    cdr_codigo: Optional[str] = None
    cdr_mensaje: Optional[str] = None
    motivo_rechazo: Optional[str] = None

    @classmethod
    def desde(cls, c: Comprobante) -> "ComprobanteResponse":
        return cls(
            empresa_ruc=c.empresa_ruc,
            numero=c.numero,
            tipo=c.tipo,
            fecha=c.fecha,
            estado=c.estado,
            subtotal=c.subtotal,
            igv=c.igv,
            total=c.total,
            moneda=c.moneda,
            firmado=c.xml_firmado is not None,
            cdr_codigo=c.cdr.codigo if c.cdr else None,
            cdr_mensaje=c.cdr.mensaje if c.cdr else None,
            motivo_rechazo=c.motivo_rechazo,
        )


class BajaRequest(BaseModel):
    empresa_ruc: str
    comprobantes: List[str]
    motivo: str
    fecha_baja: Optional[date] = None


class BajaResponse(BaseModel):
    numero: str
    ticket: Optional[str] = None
    comprobantes: List[str]
    firmado: bool = False
    cdr_codigo: Optional[str] = None
    cdr_mensaje: Optional[str] = None

    @classmethod
    def desde(cls, c: ComunicacionBaja) -> "BajaResponse":
        return cls(
            numero=c.numero,
            ticket=c.ticket,
            comprobantes=c.comprobantes,
            firmado=c.xml_firmado is not None,
            cdr_codigo=c.cdr.codigo if c.cdr else None,
            cdr_mensaje=c.cdr.mensaje if c.cdr else None,
        )


class NotaCreditoRequest(BaseModel):
    empresa_ruc: str
    numero_referencia: str
    codigo_motivo: str   # catálogo 09
    motivo: str
    items: Optional[List[Item]] = None
    serie: Optional[str] = None


class CertificadoRequest(BaseModel):
    archivo_base64: str  # contenido del .pfx / .p12
    password: str


class CertificadoResponse(BaseModel):
    ruc: str
    emitido: datetime
    vence: datetime
    emisor: str
