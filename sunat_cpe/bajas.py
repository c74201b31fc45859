"""
Anulación de comprobantes aceptados:
- Boletas: comunicación de baja (VoidedDocuments) enviada con sendSummary.
- Facturas: nota de crédito que referencia a la factura.
"""
import logging
from datetime import date, datetime
from typing import Callable, List, Optional, Sequence

from lxml import etree

from .cdr import determinar_estado
from .empaquetado import pack
from .errors import (
    AllocationError,
    DocumentNotAcceptedError,
    DocumentNotFoundError,
    EmpresaNotFoundError,
    PersistenceError,
    StorageError,
    ValidationError,
)
from .firma import Signer
from .models import (
    CDR,
    Comprobante,
    ComunicacionBaja,
    Empresa,
    EstadoComprobante,
    Item,
    Referencia,
    TipoComprobante,
)
from .repositorios import ComunicacionStore, CounterStore, DocumentStore, EmpresaStore
from .sunat import SubmissionClient
from .ubl import ID_FIRMA, NS_CAC, NS_CBC, NS_DS, NS_EXT, DocumentBuilder, _cac, _cbc, ahora_peru

logger = logging.getLogger(__name__)

NS_VOIDED = "urn:sunat:names:specification:ubl:peru:schema:xsd:VoidedDocuments-1"
NS_SAC = "urn:sunat:names:specification:ubl:peru:schema:xsd:SunatAggregateComponents-1"

# Tipo con el que se numeran las comunicaciones de baja en el contador
TIPO_BAJA = "RA"


def render_comunicacion_baja(comunicacion: ComunicacionBaja, empresa: Empresa) -> str:
    nsmap = {None: NS_VOIDED, "cac": NS_CAC, "cbc": NS_CBC, "ext": NS_EXT, "ds": NS_DS, "sac": NS_SAC}
    root = etree.Element(f"{{{NS_VOIDED}}}VoidedDocuments", nsmap=nsmap)

    exts = etree.SubElement(root, f"{{{NS_EXT}}}UBLExtensions")
    ext = etree.SubElement(exts, f"{{{NS_EXT}}}UBLExtension")
    etree.SubElement(ext, f"{{{NS_EXT}}}ExtensionContent")

    _cbc(root, "UBLVersionID", "2.0")
    _cbc(root, "CustomizationID", "1.0")
    _cbc(root, "ID", comunicacion.numero)
    _cbc(root, "ReferenceDate", comunicacion.fecha_baja.isoformat())
    _cbc(root, "IssueDate", comunicacion.fecha.strftime("%Y-%m-%d"))

    sig = _cac(root, "Signature")
    _cbc(sig, "ID", ID_FIRMA)
    party = _cac(sig, "SignatoryParty")
    _cbc(_cac(party, "PartyIdentification"), "ID", empresa.ruc)
    _cbc(_cac(party, "PartyName"), "Name", empresa.razon_social)
    ref = _cac(_cac(sig, "DigitalSignatureAttachment"), "ExternalReference")
    _cbc(ref, "URI", f"#{ID_FIRMA}")

    supplier = _cac(root, "AccountingSupplierParty")
    _cbc(supplier, "CustomerAssignedAccountID", empresa.ruc)
    _cbc(supplier, "AdditionalAccountID", "6")
    legal = _cac(_cac(supplier, "Party"), "PartyLegalEntity")
    _cbc(legal, "RegistrationName", empresa.razon_social)

    for index, numero in enumerate(comunicacion.comprobantes, start=1):
        serie, correlativo = numero.split("-", 1)
        line = etree.SubElement(root, f"{{{NS_SAC}}}VoidedDocumentsLine")
        _cbc(line, "LineID", index)
        _cbc(line, "DocumentTypeCode", TipoComprobante.BOLETA.value)
        etree.SubElement(line, f"{{{NS_SAC}}}DocumentSerialID").text = serie
        etree.SubElement(line, f"{{{NS_SAC}}}DocumentNumberID").text = correlativo
        etree.SubElement(line, f"{{{NS_SAC}}}VoidReasonDescription").text = comunicacion.motivo

    return etree.tostring(root, pretty_print=True, xml_declaration=True, encoding="UTF-8").decode("utf-8")


class VoidingService:

    def __init__(
        self,
        empresas: EmpresaStore,
        documentos: DocumentStore,
        comunicaciones: ComunicacionStore,
        counters: CounterStore,
        builder: DocumentBuilder,
        signer: Signer,
        client: SubmissionClient,
        clock: Callable[[], datetime] = ahora_peru,
    ):
        self.empresas = empresas
        self.documentos = documentos
        self.comunicaciones = comunicaciones
        self.counters = counters
        self.builder = builder
        self.signer = signer
        self.client = client
        self.clock = clock

    def _empresa(self, ruc: str) -> Empresa:
        empresa = self.empresas.get_by_ruc(ruc)
        if empresa is None:
            raise EmpresaNotFoundError(f"Empresa {ruc} no registrada")
        return empresa

    def _buscar(self, empresa_ruc: str, numero: str) -> Comprobante:
        comprobante = self.documentos.get_by_tenant_and_number(empresa_ruc, numero)
        if comprobante is None:
            raise DocumentNotFoundError(f"Comprobante {numero} no encontrado")
        return comprobante

    @staticmethod
    def _validar_aceptado(comprobante: Comprobante) -> None:
        numero = comprobante.numero
        if comprobante.estado != EstadoComprobante.ACEPTADO:
            raise DocumentNotAcceptedError(
                f"Solo se pueden anular comprobantes aceptados por SUNAT. "
                f"El comprobante {numero} está en estado {comprobante.estado.value}"
            )

    # ——————————————————————————————————————————————————————————————
    # Comunicación de baja (boletas)
    # ——————————————————————————————————————————————————————————————
    def consultar_comunicacion(self, empresa_ruc: str, numero: str) -> ComunicacionBaja:
        comunicacion = self.comunicaciones.get_by_tenant_and_number(empresa_ruc, numero)
        if comunicacion is None:
            raise DocumentNotFoundError(f"Comunicación de baja {numero} no encontrada")
        return comunicacion

    def generar_comunicacion_baja(
        self,
        empresa_ruc: str,
        comprobantes: Sequence[str],
        motivo: str,
        fecha_baja: Optional[date] = None,
    ) -> ComunicacionBaja:
        """
        Valida las boletas, numera la comunicación (RA-YYYYMMDD-n) y la guarda
        sin firmar. El envío es un paso aparte: `enviar_comunicacion_baja`.
        """
        if not comprobantes:
            raise ValidationError(["Debe indicar al menos un comprobante a dar de baja"])
        if not motivo or not motivo.strip():
            raise ValidationError(["El motivo de la baja es obligatorio"])

        for numero in comprobantes:
            comprobante = self._buscar(empresa_ruc, numero)
            if comprobante.tipo != TipoComprobante.BOLETA:
                raise ValidationError([
                    f"El comprobante {numero} no es una boleta. Use nota de crédito para facturas."
                ])
            self._validar_aceptado(comprobante)

        empresa = self._empresa(empresa_ruc)
        ahora = self.clock()
        fecha_baja = fecha_baja or ahora.date()

        # RA-YYYYMMDD-n: el correlativo se reinicia cada día
        serie = f"{TIPO_BAJA}-{ahora.strftime('%Y%m%d')}"
        try:
            correlativo = self.counters.atomic_increment(empresa_ruc, TIPO_BAJA, serie)
        except StorageError as exc:
            raise AllocationError(f"No se pudo numerar la comunicación de baja: {exc}") from exc
        numero = f"{serie}-{correlativo}"

        try:
            comunicacion = ComunicacionBaja(
                empresa_ruc=empresa_ruc,
                numero=numero,
                fecha=ahora,
                fecha_baja=fecha_baja,
                comprobantes=list(comprobantes),
                motivo=motivo,
                xml_original="",
            )
            comunicacion.xml_original = render_comunicacion_baja(comunicacion, empresa)
            self.comunicaciones.save(comunicacion)
        except Exception as e:
            logger.critical(
                "¡FALLO CRÍTICO! Se consumió el número %s de la empresa %s pero la comunicación "
                "de baja no quedó guardada. Error: %s", numero, empresa_ruc, e,
            )
            raise PersistenceError(
                f"El número {numero} fue asignado pero no se pudo guardar la comunicación de baja: {e}",
                numero=numero,
            ) from e

        logger.info("Comunicación de baja %s generada (%s comprobantes)", numero, len(comprobantes))
        return comunicacion

    def enviar_comunicacion_baja(self, empresa_ruc: str, numero: str) -> ComunicacionBaja:
        """
        Firma (una sola vez), empaqueta y envía con sendSummary. El ticket queda
        guardado en la comunicación. Si ya tenía ticket no se vuelve a enviar.
        """
        comunicacion = self.consultar_comunicacion(empresa_ruc, numero)
        if comunicacion.ticket:
            logger.info("Comunicación de baja %s ya enviada (ticket %s)", numero, comunicacion.ticket)
            return comunicacion

        empresa = self._empresa(empresa_ruc)

        # 1) Firma persistida antes de salir a la red: un reintento reusa el mismo XML
        xml_firmado = comunicacion.xml_firmado
        if xml_firmado is None:
            xml_firmado = self.signer.sign(empresa_ruc, comunicacion.xml_original)
            self.comunicaciones.set_signed_xml(empresa_ruc, numero, xml_firmado)

        # 2) Envío
        stem = f"{empresa_ruc}-{numero}"
        respuesta = self.client.send_summary(empresa_ruc, empresa.credenciales, pack(xml_firmado, stem))

        # 3) Ticket
        self.comunicaciones.set_ticket(empresa_ruc, numero, respuesta.ticket)
        logger.info("Comunicación de baja %s enviada. Ticket: %s", numero, respuesta.ticket)
        return comunicacion.model_copy(update={"xml_firmado": xml_firmado, "ticket": respuesta.ticket})

    def consultar_ticket(self, empresa_ruc: str, ticket: str) -> CDR:
        """Consulta el ticket en SUNAT y, si ya hay respuesta final, la guarda en su comunicación."""
        empresa = self._empresa(empresa_ruc)
        cdr = self.client.check_ticket(empresa_ruc, empresa.credenciales, ticket)
        if determinar_estado(cdr.codigo) is None:
            return cdr

        comunicacion = self.comunicaciones.get_by_ticket(empresa_ruc, ticket)
        if comunicacion is None:
            logger.warning("Ticket %s de %s sin comunicación de baja registrada", ticket, empresa_ruc)
        elif comunicacion.cdr is None:
            self.comunicaciones.attach_receipt(empresa_ruc, comunicacion.numero, cdr)
            logger.info("Comunicación de baja %s: ticket %s respondido con código %s",
                        comunicacion.numero, ticket, cdr.codigo)
        return cdr

    # ——————————————————————————————————————————————————————————————
    # Nota de crédito (facturas)
    # ——————————————————————————————————————————————————————————————
    def generar_nota_credito(
        self,
        empresa_ruc: str,
        numero_referencia: str,
        codigo_motivo: str,
        motivo: str,
        items: Optional[List[Item]] = None,
        serie: Optional[str] = None,
    ) -> Comprobante:
        original = self._buscar(empresa_ruc, numero_referencia)
        if original.tipo != TipoComprobante.FACTURA:
            raise ValidationError([
                f"El comprobante {numero_referencia} no es una factura. "
                "Use comunicación de baja para boletas."
            ])
        self._validar_aceptado(original)

        empresa = self._empresa(empresa_ruc)
        referencia = Referencia(
            numero=original.numero,
            tipo=original.tipo,
            codigo_motivo=codigo_motivo,
            descripcion=motivo,
        )
        return self.builder.build(
            empresa_ruc,
            TipoComprobante.NOTA_CREDITO,
            empresa.emisor(),
            original.receptor,
            items or original.items,
            moneda=original.moneda,
            serie=serie,
            referencia=referencia,
        )
