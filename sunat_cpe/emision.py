"""
Orquestación del flujo completo de un comprobante:

    generar -> firmar -> enviar (con reintentos) -> conciliar CDR

Cada paso persiste su resultado, así un fallo intermedio deja el
comprobante en un estado desde el que se puede retomar.
"""
import logging
from typing import List, Optional, Sequence

from .cdr import ResponseReconciler
from .empaquetado import nombre_archivo, pack
from .errors import (
    CPEError,
    DocumentNotFoundError,
    EmpresaNotFoundError,
    InvalidStateTransitionError,
    RemoteFaultError,
    ValidationError,
)
from .factura_pdf import generar_pdf as _generar_pdf
from .firma import Signer, leer_certificado_pkcs12
from .models import (
    Certificado,
    Comprobante,
    Empresa,
    ErrorReproceso,
    EstadoComprobante,
    Item,
    Receptor,
    Referencia,
    ResultadoEnvio,
    ResultadoReproceso,
    TipoComprobante,
)
from .reintentos import RetryCoordinator
from .repositorios import CertificateStore, DocumentStore, EmpresaStore
from .sunat import SubmissionClient
from .ubl import DocumentBuilder

logger = logging.getLogger(__name__)


class EmisionService:

    def __init__(
        self,
        empresas: EmpresaStore,
        documentos: DocumentStore,
        certificados: CertificateStore,
        builder: DocumentBuilder,
        signer: Signer,
        client: SubmissionClient,
        retry: RetryCoordinator,
        reconciler: ResponseReconciler,
        pdf_dir: str = "comprobantes",
    ):
        self.empresas = empresas
        self.documentos = documentos
        self.certificados = certificados
        self.builder = builder
        self.signer = signer
        self.client = client
        self.retry = retry
        self.reconciler = reconciler
        self.pdf_dir = pdf_dir

    def _empresa(self, ruc: str) -> Empresa:
        empresa = self.empresas.get_by_ruc(ruc)
        if empresa is None:
            raise EmpresaNotFoundError(f"Empresa {ruc} no registrada")
        return empresa

    def consultar(self, empresa_ruc: str, numero: str) -> Comprobante:
        """Estado actual, CDR y motivo de rechazo del comprobante."""
        comprobante = self.documentos.get_by_tenant_and_number(empresa_ruc, numero)
        if comprobante is None:
            raise DocumentNotFoundError(f"Comprobante {numero} no encontrado")
        return comprobante

    def listar_pendientes(self, empresa_ruc: str) -> List[Comprobante]:
        return self.documentos.list_by_state(empresa_ruc, EstadoComprobante.PENDIENTE)

    def generar(
        self,
        empresa_ruc: str,
        tipo: TipoComprobante,
        receptor: Receptor,
        items: Sequence[Item],
        moneda: str = "PEN",
        serie: Optional[str] = None,
        referencia: Optional[Referencia] = None,
    ) -> Comprobante:
        empresa = self._empresa(empresa_ruc)
        if not empresa.activo:
            raise ValidationError([f"La empresa {empresa_ruc} está inactiva"])

        # El emisor se copia en este momento y no se vuelve a leer
        return self.builder.build(
            empresa_ruc, tipo, empresa.emisor(), receptor, items,
            moneda=moneda, serie=serie, referencia=referencia,
        )

    def firmar(self, empresa_ruc: str, numero: str) -> Comprobante:
        return self.signer.sign_document(empresa_ruc, numero)

    def enviar(self, empresa_ruc: str, numero: str) -> ResultadoEnvio:
        """Primer envío de un comprobante firmado (debe estar PENDIENTE)."""
        comprobante = self.consultar(empresa_ruc, numero)
        if comprobante.estado != EstadoComprobante.PENDIENTE:
            raise InvalidStateTransitionError(
                f"El comprobante {numero} está {comprobante.estado.value}; "
                "use reenviar si el envío anterior quedó inconcluso"
            )
        return self._enviar(comprobante)

    def reenviar(self, empresa_ruc: str, numero: str) -> ResultadoEnvio:
        """
        Reenvía un comprobante PENDIENTE o ENVIADO con el mismo XML firmado.
        Nunca vuelve a firmar ni a numerar.
        """
        comprobante = self.consultar(empresa_ruc, numero)
        if comprobante.estado not in (EstadoComprobante.PENDIENTE, EstadoComprobante.ENVIADO):
            raise InvalidStateTransitionError(
                f"El comprobante {numero} ya fue {comprobante.estado.value}; no se puede reenviar"
            )
        logger.info("Reenviando comprobante %s de %s (estado %s)",
                    numero, empresa_ruc, comprobante.estado.value)
        return self._enviar(comprobante)

    def reprocesar_pendientes(self, empresa_ruc: str) -> ResultadoReproceso:
        """
        Reenvía todos los comprobantes PENDIENTE y firmados de la empresa.
        Un error en uno no corta el lote: queda anotado y se sigue con el siguiente.
        Los que aún no tienen firma se saltan; nunca salieron hacia SUNAT.
        """
        self._empresa(empresa_ruc)
        reproceso = ResultadoReproceso(empresa_ruc=empresa_ruc)

        for comprobante in self.listar_pendientes(empresa_ruc):
            if not comprobante.xml_firmado:
                logger.debug("Comprobante %s sin firmar, no se reprocesa", comprobante.numero)
                continue
            try:
                reproceso.resultados.append(self.reenviar(empresa_ruc, comprobante.numero))
            except CPEError as e:
                logger.error("Reproceso de %s fallido: %s", comprobante.numero, e)
                reproceso.errores.append(ErrorReproceso(numero=comprobante.numero, error=str(e)))

        logger.info("Reproceso de %s: %s enviados, %s con error",
                    empresa_ruc, len(reproceso.resultados), len(reproceso.errores))
        return reproceso

    def _enviar(self, comprobante: Comprobante) -> ResultadoEnvio:
        ruc, numero = comprobante.empresa_ruc, comprobante.numero
        if not comprobante.xml_firmado:
            raise InvalidStateTransitionError(f"El comprobante {numero} no está firmado")

        empresa = self._empresa(ruc)

        # 1) Empaquetado: RUC-TIPO-SERIE-CORRELATIVO.xml dentro de .zip
        archive = pack(comprobante.xml_firmado, nombre_archivo(ruc, comprobante.tipo, numero))

        # 2) Envío con reintentos (queda ENVIADO mientras tanto)
        try:
            resultado = self.retry.execute_with_retry(
                lambda: self.client.submit(ruc, empresa.credenciales, archive), ruc, numero
            )
        except RemoteFaultError as e:
            logger.error("SUNAT rechazó la llamada para %s: %s", numero, e.fault)
            raise

        # 3) Sin respuesta tras todos los intentos: PENDIENTE para reenvío posterior
        if not resultado.success:
            self.documentos.set_state(ruc, numero, EstadoComprobante.PENDIENTE)
            logger.warning("Comprobante %s queda PENDIENTE tras %s intentos",
                           numero, resultado.total_attempts)
            return ResultadoEnvio(
                numero=numero,
                estado=EstadoComprobante.PENDIENTE,
                pendiente=True,
                intentos=resultado.total_attempts,
            )

        # 4) Conciliación del CDR
        cdr = resultado.data
        estado = self.reconciler.reconcile(ruc, numero, cdr)
        return ResultadoEnvio(
            numero=numero,
            estado=estado or EstadoComprobante.ENVIADO,
            cdr=cdr,
            pendiente=estado is None,
            intentos=resultado.total_attempts,
        )

    def generar_pdf(self, empresa_ruc: str, numero: str) -> str:
        return _generar_pdf(self.consultar(empresa_ruc, numero), self.pdf_dir)

    def cargar_certificado(self, empresa_ruc: str, archivo: bytes, password: str) -> Certificado:
        self._empresa(empresa_ruc)
        certificado = leer_certificado_pkcs12(empresa_ruc, archivo, password)
        self.certificados.put(certificado)
        logger.info("Certificado de %s cargado, vence %s", empresa_ruc, certificado.vence)
        return certificado
