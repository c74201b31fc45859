import base64
import binascii
import logging
import os
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse

from .bajas import VoidingService
from .cdr import ResponseReconciler
from .config import Settings
from .db import (
    Database,
    PostgresCertificateStore,
    PostgresComunicacionStore,
    PostgresCounterStore,
    PostgresDocumentStore,
    PostgresEmpresaStore,
)
from .emision import EmisionService
from .errors import (
    AlreadySignedError,
    CertificateError,
    CPEError,
    DocumentNotAcceptedError,
    DocumentNotFoundError,
    EmpresaNotFoundError,
    InvalidStateTransitionError,
    NoReceiptError,
    PersistenceError,
    RemoteFaultError,
    StorageError,
    TransientError,
    ValidationError,
)
from .firma import Signer
from .models import (
    CDR,
    BajaRequest,
    BajaResponse,
    CertificadoRequest,
    CertificadoResponse,
    ComprobanteRequest,
    ComprobanteResponse,
    NotaCreditoRequest,
    ResultadoEnvio,
    ResultadoReproceso,
)
from .numeracion import NumberAllocator
from .reintentos import RetryCoordinator
from .sunat import SubmissionClient
from .ubl import DocumentBuilder
from .validacion import DataValidator

logger = logging.getLogger(__name__)

# El orden importa: las subclases van antes que sus bases
ESTADOS_HTTP = (
    (ValidationError, 422),
    (DocumentNotFoundError, 404),
    (EmpresaNotFoundError, 404),
    (CertificateError, 409),
    (AlreadySignedError, 409),
    (InvalidStateTransitionError, 409),
    (DocumentNotAcceptedError, 409),
    (RemoteFaultError, 502),
    (NoReceiptError, 502),
    (TransientError, 504),
    (StorageError, 503),
)


def status_para(exc: CPEError) -> int:
    for tipo, status in ESTADOS_HTTP:
        if isinstance(exc, tipo):
            return status
    return 500


def construir_servicios(settings: Settings, db: Database):
    """Arma el pipeline completo sobre PostgreSQL."""
    empresas = PostgresEmpresaStore(db)
    documentos = PostgresDocumentStore(db)
    certificados = PostgresCertificateStore(db)
    counters = PostgresCounterStore(db)
    comunicaciones = PostgresComunicacionStore(db)

    builder = DocumentBuilder(NumberAllocator(counters), documentos, DataValidator())
    signer = Signer(certificados, documentos)
    client = SubmissionClient(settings.sunat_wsdl, timeout=settings.SUNAT_TIMEOUT)
    retry = RetryCoordinator(
        documentos,
        max_attempts=settings.RETRY_MAX_ATTEMPTS,
        initial_delay=settings.RETRY_INITIAL_DELAY,
        multiplier=settings.RETRY_BACKOFF_MULTIPLIER,
    )

    emision = EmisionService(
        empresas, documentos, certificados, builder, signer, client, retry,
        ResponseReconciler(documentos), pdf_dir=settings.PDF_DIR,
    )
    bajas = VoidingService(empresas, documentos, comunicaciones, counters, builder, signer, client)
    return emision, bajas


def crear_app(
    settings: Optional[Settings] = None,
    emision: Optional[EmisionService] = None,
    bajas: Optional[VoidingService] = None,
) -> FastAPI:
    settings = settings or Settings()
    logging.basicConfig(level=settings.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db = None
        if emision is None or bajas is None:
            # Se ejecuta al iniciar la aplicación
            logger.info("Iniciando aplicación y conectando a la base de datos...")
            db = Database(settings)
            db.connect()
            db.crear_tablas()
            app.state.emision, app.state.bajas = construir_servicios(settings, db)
        yield
        # Se ejecuta al apagar la aplicación
        if db is not None:
            logger.info("Cerrando conexiones a la base de datos...")
            db.close()

    app = FastAPI(
        title="API SUNAT CPE",
        version="1.0",
        description="Emisión de comprobantes electrónicos SUNAT multiempresa: numeración, firma, envío y CDR",
        lifespan=lifespan,
    )
    if emision is not None and bajas is not None:
        app.state.emision, app.state.bajas = emision, bajas

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(CPEError)
    async def cpe_error_handler(request: Request, exc: CPEError):
        status = status_para(exc)
        if isinstance(exc, ValidationError):
            detail = exc.errores
        elif isinstance(exc, PersistenceError):
            detail = {"mensaje": str(exc), "numero": exc.numero}
        else:
            detail = str(exc)
        if status >= 500:
            logger.error("Error %s en %s: %s", status, request.url.path, exc)
        return JSONResponse(status_code=status, content={"detail": detail})

    @app.get("/", summary="Estado del servicio")
    def root():
        return {"mensaje": "API SUNAT funcionando correctamente"}

    @app.get("/health", summary="Estado de salud del servicio")
    def health_check():
        return {"status": "ok", "environment": settings.ENVIRONMENT}

    # ——————————————————————————————————————————————————————————————
    # Comprobantes
    # ——————————————————————————————————————————————————————————————
    @app.post(
        "/comprobantes",
        response_model=ComprobanteResponse,
        status_code=201,
        summary="Valida, numera y genera el XML de un comprobante",
    )
    def generar_comprobante(data: ComprobanteRequest, request: Request):
        comprobante = request.app.state.emision.generar(
            data.empresa_ruc, data.tipo, data.receptor, data.items,
            moneda=data.moneda.value, serie=data.serie, referencia=data.referencia,
        )
        return ComprobanteResponse.desde(comprobante)

    @app.get(
        "/comprobantes/{ruc}/pendientes",
        response_model=List[ComprobanteResponse],
        summary="Comprobantes pendientes de envío",
    )
    def listar_pendientes(ruc: str, request: Request):
        return [ComprobanteResponse.desde(c) for c in request.app.state.emision.listar_pendientes(ruc)]

    @app.post(
        "/comprobantes/{ruc}/pendientes/reprocesar",
        response_model=ResultadoReproceso,
        summary="Reenvía todos los comprobantes pendientes y firmados de la empresa",
    )
    def reprocesar_pendientes(ruc: str, request: Request):
        return request.app.state.emision.reprocesar_pendientes(ruc)

    @app.get(
        "/comprobantes/{ruc}/{numero}",
        response_model=ComprobanteResponse,
        summary="Estado, CDR y motivo de rechazo de un comprobante",
    )
    def consultar_comprobante(ruc: str, numero: str, request: Request):
        return ComprobanteResponse.desde(request.app.state.emision.consultar(ruc, numero))

    @app.post(
        "/comprobantes/{ruc}/{numero}/firmar",
        response_model=ComprobanteResponse,
        summary="Firma digitalmente el comprobante (una sola vez)",
    )
    def firmar_comprobante(ruc: str, numero: str, request: Request):
        return ComprobanteResponse.desde(request.app.state.emision.firmar(ruc, numero))

    @app.post(
        "/comprobantes/{ruc}/{numero}/enviar",
        response_model=ResultadoEnvio,
        summary="Envía el comprobante firmado a SUNAT",
    )
    def enviar_comprobante(ruc: str, numero: str, request: Request):
        return request.app.state.emision.enviar(ruc, numero)

    @app.post(
        "/comprobantes/{ruc}/{numero}/reenviar",
        response_model=ResultadoEnvio,
        summary="Reenvía un comprobante PENDIENTE o ENVIADO sin volver a firmarlo",
    )
    def reenviar_comprobante(ruc: str, numero: str, request: Request):
        return request.app.state.emision.reenviar(ruc, numero)

    @app.get(
        "/comprobantes/{ruc}/{numero}/pdf",
        summary="Descarga la representación impresa de un comprobante aceptado",
    )
    def descargar_pdf(ruc: str, numero: str, request: Request):
        path = request.app.state.emision.generar_pdf(ruc, numero)

        # Verificación de seguridad: el path resuelto debe estar dentro del directorio base
        base_dir = os.path.abspath(settings.PDF_DIR)
        if not os.path.abspath(path).startswith(base_dir):
            raise HTTPException(status_code=400, detail="Ruta de archivo inválida.")
        return FileResponse(path, media_type="application/pdf", filename=os.path.basename(path))

    # ——————————————————————————————————————————————————————————————
    # Anulaciones
    # ——————————————————————————————————————————————————————————————
    @app.post(
        "/bajas",
        response_model=BajaResponse,
        summary="Genera, guarda y envía la comunicación de baja de boletas aceptadas",
    )
    def comunicar_baja(data: BajaRequest, request: Request):
        servicio = request.app.state.bajas
        comunicacion = servicio.generar_comunicacion_baja(
            data.empresa_ruc, data.comprobantes, data.motivo, fecha_baja=data.fecha_baja,
        )
        # Ya quedó guardada: si el envío falla se retoma con /bajas/{ruc}/{numero}/enviar
        comunicacion = servicio.enviar_comunicacion_baja(comunicacion.empresa_ruc, comunicacion.numero)
        return BajaResponse.desde(comunicacion)

    @app.get(
        "/bajas/{ruc}/tickets/{ticket}",
        response_model=CDR,
        summary="Consulta el estado de un ticket de SUNAT",
    )
    def consultar_ticket(ruc: str, ticket: str, request: Request):
        return request.app.state.bajas.consultar_ticket(ruc, ticket)

    @app.get(
        "/bajas/{ruc}/{numero}",
        response_model=BajaResponse,
        summary="Ticket y CDR de una comunicación de baja",
    )
    def consultar_baja(ruc: str, numero: str, request: Request):
        return BajaResponse.desde(request.app.state.bajas.consultar_comunicacion(ruc, numero))

    @app.post(
        "/bajas/{ruc}/{numero}/enviar",
        response_model=BajaResponse,
        summary="Envía (o reenvía) una comunicación de baja guardada que aún no tiene ticket",
    )
    def enviar_baja(ruc: str, numero: str, request: Request):
        return BajaResponse.desde(request.app.state.bajas.enviar_comunicacion_baja(ruc, numero))

    @app.post(
        "/notas-credito",
        response_model=ComprobanteResponse,
        status_code=201,
        summary="Genera una nota de crédito que anula una factura aceptada",
    )
    def generar_nota_credito(data: NotaCreditoRequest, request: Request):
        nota = request.app.state.bajas.generar_nota_credito(
            data.empresa_ruc, data.numero_referencia, data.codigo_motivo, data.motivo,
            items=data.items, serie=data.serie,
        )
        return ComprobanteResponse.desde(nota)

    # ——————————————————————————————————————————————————————————————
    # Certificados
    # ——————————————————————————————————————————————————————————————
    @app.post(
        "/empresas/{ruc}/certificado",
        response_model=CertificadoResponse,
        summary="Carga el certificado digital (.pfx/.p12) de una empresa",
    )
    def cargar_certificado(ruc: str, data: CertificadoRequest, request: Request):
        try:
            archivo = base64.b64decode(data.archivo_base64, validate=True)
        except (binascii.Error, ValueError):
            raise HTTPException(status_code=422, detail="archivo_base64 no es base64 válido")

        certificado = request.app.state.emision.cargar_certificado(ruc, archivo, data.password)
        return CertificadoResponse(
            ruc=certificado.ruc,
            emitido=certificado.emitido,
            vence=certificado.vence,
            emisor=certificado.emisor,
        )

    return app


app = crear_app()
