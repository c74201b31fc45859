"""
Construcción del XML UBL 2.1 de los comprobantes (factura, boleta y notas).

El árbol se arma con lxml, así los textos (razón social, direcciones,
descripciones) quedan escapados sin que haya que pensar en ello.
"""
import logging
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from lxml import etree

from .catalogos import tributo_por_afectacion
from .errors import PersistenceError
from .models import (
    Comprobante,
    Emisor,
    EstadoComprobante,
    Item,
    Moneda,
    Receptor,
    Referencia,
    TipoComprobante,
    round2,
)
from .numeracion import SERIES_POR_DEFECTO, SUFIJO_NOTA, NumberAllocator, formatear_numero
from .repositorios import DocumentStore
from .validacion import DataValidator

logger = logging.getLogger(__name__)

# Hora de Perú (UTC-5, sin horario de verano)
ZONA_PERU = timezone(timedelta(hours=-5))

NS_CAC = "urn:oasis:names:specification:ubl:schema:xsd:CommonAggregateComponents-2"
NS_CBC = "urn:oasis:names:specification:ubl:schema:xsd:CommonBasicComponents-2"
NS_EXT = "urn:oasis:names:specification:ubl:schema:xsd:CommonExtensionComponents-2"
NS_DS = "http://www.w3.org/2000/09/xmldsig#"

# Tipo de comprobante -> (namespace raíz, elemento raíz, elemento de línea, elemento de cantidad)
DOCUMENTOS: Dict[TipoComprobante, Tuple[str, str, str, str]] = {
    TipoComprobante.FACTURA: (
        "urn:oasis:names:specification:ubl:schema:xsd:Invoice-2",
        "Invoice", "InvoiceLine", "InvoicedQuantity",
    ),
    TipoComprobante.BOLETA: (
        "urn:oasis:names:specification:ubl:schema:xsd:Invoice-2",
        "Invoice", "InvoiceLine", "InvoicedQuantity",
    ),
    TipoComprobante.NOTA_CREDITO: (
        "urn:oasis:names:specification:ubl:schema:xsd:CreditNote-2",
        "CreditNote", "CreditNoteLine", "CreditedQuantity",
    ),
    TipoComprobante.NOTA_DEBITO: (
        "urn:oasis:names:specification:ubl:schema:xsd:DebitNote-2",
        "DebitNote", "DebitNoteLine", "DebitedQuantity",
    ),
}

# Id que enlaza cac:Signature con la firma digital que se inserta después
ID_FIRMA = "SignatureSP"


def ahora_peru() -> datetime:
    return datetime.now(ZONA_PERU)


def _monto(valor: Decimal) -> str:
    return f"{round2(valor):.2f}"


def calcular_totales(items: Sequence[Item]) -> Tuple[Decimal, Decimal, Decimal]:
    """
    Suma los totales e IGV de cada item tal como vienen (no se recalcula
    cantidad x precio) y redondea cada agregado a 2 decimales.
    """
    subtotal = round2(sum((item.total for item in items), Decimal("0")))
    igv = round2(sum((item.igv for item in items), Decimal("0")))
    return subtotal, igv, round2(subtotal + igv)


def serie_por_defecto(tipo: TipoComprobante, referencia: Optional[Referencia] = None) -> str:
    """Las notas usan la letra de la serie del comprobante que modifican."""
    if tipo in SERIES_POR_DEFECTO:
        return SERIES_POR_DEFECTO[tipo]
    letra = "F"
    if referencia is not None and referencia.numero:
        letra = referencia.numero[0].upper()
    return f"{letra}{SUFIJO_NOTA[tipo]}"


# ——————————————————————————————————————————————————————————————
# Helpers de armado del árbol
# ——————————————————————————————————————————————————————————————
def _cbc(parent, tag: str, text=None, **attrs):
    el = etree.SubElement(parent, f"{{{NS_CBC}}}{tag}", **attrs)
    if text is not None:
        el.text = str(text)
    return el


def _cac(parent, tag: str):
    return etree.SubElement(parent, f"{{{NS_CAC}}}{tag}")


def _direccion(parent, tag: str, direccion, con_tipo: bool = False):
    addr = _cac(parent, tag)
    if direccion.ubigeo:
        _cbc(addr, "ID", direccion.ubigeo)
    if con_tipo:
        _cbc(addr, "AddressTypeCode", "0000")
    if direccion.urbanizacion:
        _cbc(addr, "CitySubdivisionName", direccion.urbanizacion)
    if direccion.provincia:
        _cbc(addr, "CityName", direccion.provincia)
    if direccion.departamento:
        _cbc(addr, "CountrySubentity", direccion.departamento)
    if direccion.distrito:
        _cbc(addr, "District", direccion.distrito)
    line = _cac(addr, "AddressLine")
    _cbc(line, "Line", direccion.direccion)
    country = _cac(addr, "Country")
    _cbc(country, "IdentificationCode", direccion.codigo_pais or "PE")
    return addr


def _firma_placeholder(root, emisor: Emisor) -> None:
    sig = _cac(root, "Signature")
    _cbc(sig, "ID", ID_FIRMA)
    party = _cac(sig, "SignatoryParty")
    ident = _cac(party, "PartyIdentification")
    _cbc(ident, "ID", emisor.ruc)
    name = _cac(party, "PartyName")
    _cbc(name, "Name", emisor.razon_social)
    attach = _cac(sig, "DigitalSignatureAttachment")
    ref = _cac(attach, "ExternalReference")
    _cbc(ref, "URI", f"#{ID_FIRMA}")


def _emisor(root, emisor: Emisor) -> None:
    supplier = _cac(root, "AccountingSupplierParty")
    party = _cac(supplier, "Party")
    ident = _cac(party, "PartyIdentification")
    _cbc(ident, "ID", emisor.ruc, schemeID="6")
    name = _cac(party, "PartyName")
    _cbc(name, "Name", emisor.nombre_comercial)
    legal = _cac(party, "PartyLegalEntity")
    _cbc(legal, "RegistrationName", emisor.razon_social)
    _direccion(legal, "RegistrationAddress", emisor.direccion, con_tipo=True)


def _receptor(root, receptor: Receptor) -> None:
    customer = _cac(root, "AccountingCustomerParty")
    party = _cac(customer, "Party")
    ident = _cac(party, "PartyIdentification")
    _cbc(ident, "ID", receptor.numero_documento, schemeID=receptor.tipo_documento)
    legal = _cac(party, "PartyLegalEntity")
    _cbc(legal, "RegistrationName", receptor.nombre)
    # El bloque de dirección solo va si el receptor la informó
    if receptor.direccion is not None:
        _direccion(legal, "RegistrationAddress", receptor.direccion)


def _tax_subtotal(parent, moneda: str, base: Decimal, impuesto: Decimal, tributo, afectacion=None):
    sub = _cac(parent, "TaxSubtotal")
    _cbc(sub, "TaxableAmount", _monto(base), currencyID=moneda)
    _cbc(sub, "TaxAmount", _monto(impuesto), currencyID=moneda)
    cat = _cac(sub, "TaxCategory")
    if afectacion is not None:
        _cbc(cat, "Percent", tributo.porcentaje)
        _cbc(cat, "TaxExemptionReasonCode", afectacion)
    scheme = _cac(cat, "TaxScheme")
    _cbc(scheme, "ID", tributo.codigo)
    _cbc(scheme, "Name", tributo.nombre)
    _cbc(scheme, "TaxTypeCode", tributo.tipo)


def _totales(root, tipo: TipoComprobante, items: Sequence[Item], moneda: str,
             subtotal: Decimal, igv: Decimal, total: Decimal) -> None:
    # Agrupamos por tributo: una línea gravada y otra exonerada van en subtotales distintos
    grupos: "OrderedDict[str, List]" = OrderedDict()
    for item in items:
        tributo = tributo_por_afectacion(item.afectacion_igv)
        grupo = grupos.setdefault(tributo.codigo, [tributo, Decimal("0"), Decimal("0")])
        grupo[1] += item.total
        grupo[2] += item.igv

    tax_total = _cac(root, "TaxTotal")
    _cbc(tax_total, "TaxAmount", _monto(igv), currencyID=moneda)
    for tributo, base, impuesto in grupos.values():
        _tax_subtotal(tax_total, moneda, base, impuesto, tributo)

    tag = "RequestedMonetaryTotal" if tipo == TipoComprobante.NOTA_DEBITO else "LegalMonetaryTotal"
    monetary = _cac(root, tag)
    _cbc(monetary, "LineExtensionAmount", _monto(subtotal), currencyID=moneda)
    _cbc(monetary, "TaxInclusiveAmount", _monto(total), currencyID=moneda)
    _cbc(monetary, "PayableAmount", _monto(total), currencyID=moneda)


def _lineas(root, tipo: TipoComprobante, items: Sequence[Item], moneda: str) -> None:
    _, _, tag_linea, tag_cantidad = DOCUMENTOS[tipo]
    for index, item in enumerate(items, start=1):
        tributo = tributo_por_afectacion(item.afectacion_igv)
        line = _cac(root, tag_linea)
        _cbc(line, "ID", index)
        _cbc(line, tag_cantidad, format(item.cantidad, "f"), unitCode=item.unidad_medida)
        _cbc(line, "LineExtensionAmount", _monto(item.total), currencyID=moneda)

        pricing = _cac(line, "PricingReference")
        alt = _cac(pricing, "AlternativeConditionPrice")
        _cbc(alt, "PriceAmount", _monto(item.precio_unitario), currencyID=moneda)
        _cbc(alt, "PriceTypeCode", "01")

        tax_total = _cac(line, "TaxTotal")
        _cbc(tax_total, "TaxAmount", _monto(item.igv), currencyID=moneda)
        _tax_subtotal(tax_total, moneda, item.total, item.igv, tributo, afectacion=item.afectacion_igv)

        it = _cac(line, "Item")
        _cbc(it, "Description", item.descripcion)
        seller = _cac(it, "SellersItemIdentification")
        _cbc(seller, "ID", item.codigo)

        price = _cac(line, "Price")
        _cbc(price, "PriceAmount", _monto(item.precio_unitario), currencyID=moneda)


def render_xml(
    tipo: TipoComprobante,
    numero: str,
    fecha: datetime,
    emisor: Emisor,
    receptor: Receptor,
    items: Sequence[Item],
    moneda: str,
    subtotal: Decimal,
    igv: Decimal,
    total: Decimal,
    referencia: Optional[Referencia] = None,
) -> str:
    """Serializa el comprobante a XML UBL 2.1. No toca ningún almacén."""
    tipo = TipoComprobante(tipo)
    ns_raiz, tag_raiz, _, _ = DOCUMENTOS[tipo]
    nsmap = {None: ns_raiz, "cac": NS_CAC, "cbc": NS_CBC, "ext": NS_EXT, "ds": NS_DS}
    root = etree.Element(f"{{{ns_raiz}}}{tag_raiz}", nsmap=nsmap)

    # 1) Espacio reservado para la firma digital
    exts = etree.SubElement(root, f"{{{NS_EXT}}}UBLExtensions")
    ext = etree.SubElement(exts, f"{{{NS_EXT}}}UBLExtension")
    etree.SubElement(ext, f"{{{NS_EXT}}}ExtensionContent")

    # 2) Cabecera
    _cbc(root, "UBLVersionID", "2.1")
    _cbc(root, "CustomizationID", "2.0")
    _cbc(root, "ID", numero)
    _cbc(root, "IssueDate", fecha.strftime("%Y-%m-%d"))
    _cbc(root, "IssueTime", fecha.strftime("%H:%M:%S"))
    if tag_raiz == "Invoice":
        _cbc(root, "InvoiceTypeCode", tipo.value, listID="0101")
    _cbc(root, "DocumentCurrencyCode", moneda)

    # 3) Notas: motivo y comprobante afectado
    if referencia is not None and tag_raiz != "Invoice":
        discrepancy = _cac(root, "DiscrepancyResponse")
        _cbc(discrepancy, "ReferenceID", referencia.numero)
        _cbc(discrepancy, "ResponseCode", referencia.codigo_motivo)
        _cbc(discrepancy, "Description", referencia.descripcion)
        billing = _cac(root, "BillingReference")
        doc_ref = _cac(billing, "InvoiceDocumentReference")
        _cbc(doc_ref, "ID", referencia.numero)
        _cbc(doc_ref, "DocumentTypeCode", TipoComprobante(referencia.tipo).value)

    # 4) Partes, totales y líneas
    _firma_placeholder(root, emisor)
    _emisor(root, emisor)
    _receptor(root, receptor)
    _totales(root, tipo, items, moneda, subtotal, igv, total)
    _lineas(root, tipo, items, moneda)

    return etree.tostring(root, pretty_print=True, xml_declaration=True, encoding="UTF-8").decode("utf-8")


class DocumentBuilder:
    """
    Valida, numera, arma el XML y guarda el comprobante en estado PENDIENTE.

    El orden importa: la validación va antes de pedir el número, para que
    una solicitud rechazada no consuma correlativos.
    """

    def __init__(
        self,
        allocator: NumberAllocator,
        documentos: DocumentStore,
        validator: Optional[DataValidator] = None,
        clock: Callable[[], datetime] = ahora_peru,
    ):
        self.allocator = allocator
        self.documentos = documentos
        self.validator = validator or DataValidator()
        self.clock = clock

    def build(
        self,
        empresa_ruc: str,
        tipo: TipoComprobante,
        emisor: Emisor,
        receptor: Receptor,
        items: Sequence[Item],
        moneda: str = "PEN",
        serie: Optional[str] = None,
        referencia: Optional[Referencia] = None,
        fecha: Optional[datetime] = None,
    ) -> Comprobante:
        tipo = TipoComprobante(tipo)
        moneda = getattr(moneda, "value", moneda)

        # 1) Validación (sin efectos secundarios)
        self.validator.validar_comprobante(tipo, receptor, items, moneda, referencia)

        # 2) Totales
        subtotal, igv, total = calcular_totales(items)

        # 3) Numeración; desde aquí el correlativo ya está consumido
        serie = serie or serie_por_defecto(tipo, referencia)
        correlativo = self.allocator.allocate(empresa_ruc, tipo, serie)
        numero = formatear_numero(serie, correlativo)

        try:
            fecha = fecha or self.clock()
            xml = render_xml(tipo, numero, fecha, emisor, receptor, items, moneda,
                             subtotal, igv, total, referencia)
            comprobante = Comprobante(
                empresa_ruc=empresa_ruc,
                numero=numero,
                tipo=tipo,
                fecha=fecha,
                emisor=emisor,
                receptor=receptor,
                items=list(items),
                subtotal=subtotal,
                igv=igv,
                total=total,
                moneda=Moneda(moneda),
                referencia=referencia,
                xml_original=xml,
                estado=EstadoComprobante.PENDIENTE,
                fecha_creacion=fecha,
                fecha_actualizacion=fecha,
            )

            # 4) Persistencia
            self.documentos.save(comprobante)
        except Exception as e:
            logger.critical(
                "¡FALLO CRÍTICO! Se consumió el número %s de la empresa %s pero el comprobante "
                "no quedó guardado. Error: %s", numero, empresa_ruc, e,
            )
            raise PersistenceError(
                f"El número {numero} fue asignado pero no se pudo guardar el comprobante: {e}",
                numero=numero,
            ) from e

        logger.info("Comprobante %s generado para la empresa %s", numero, empresa_ruc)
        return comprobante
