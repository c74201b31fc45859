import logging
from datetime import date, datetime
from types import SimpleNamespace

import pytest
import requests
from lxml import etree

from sunat_cpe.bajas import NS_SAC, VoidingService
from sunat_cpe.errors import (
    DocumentNotAcceptedError,
    DocumentNotFoundError,
    PersistenceError,
    TransientError,
    ValidationError,
)
from sunat_cpe.firma import verify_signature
from sunat_cpe.models import EstadoComprobante, TipoComprobante
from sunat_cpe.ubl import NS_CAC, NS_CBC, ZONA_PERU

from conftest import RUC

HOY = datetime(2024, 3, 15, 18, 0, 0, tzinfo=ZONA_PERU)


@pytest.fixture
def bajas(empresas, documentos, comunicaciones, counters, builder, signer, client):
    return VoidingService(empresas, documentos, comunicaciones, counters, builder, signer, client,
                          clock=lambda: HOY)


def _aceptar(documentos, comprobante, cdr_factory):
    documentos.set_state(RUC, comprobante.numero, EstadoComprobante.ENVIADO)
    documentos.attach_receipt(RUC, comprobante.numero, cdr_factory("0", "aceptado"), EstadoComprobante.ACEPTADO)


@pytest.fixture
def boleta_aceptada(builder, documentos, empresa, receptor_dni, items, cdr_factory):
    boleta = builder.build(RUC, TipoComprobante.BOLETA, empresa.emisor(), receptor_dni, items)
    _aceptar(documentos, boleta, cdr_factory)
    return boleta


@pytest.fixture
def factura_aceptada(builder, documentos, empresa, receptor_ruc, items, cdr_factory):
    factura = builder.build(RUC, TipoComprobante.FACTURA, empresa.emisor(), receptor_ruc, items)
    _aceptar(documentos, factura, cdr_factory)
    return factura


def test_comunicacion_de_baja(bajas, boleta_aceptada):
    comunicacion = bajas.generar_comunicacion_baja(RUC, [boleta_aceptada.numero], "Error en el monto")

    assert comunicacion.numero == "RA-20240315-1"
    assert comunicacion.fecha_baja == date(2024, 3, 15)
    root = etree.fromstring(comunicacion.xml_original.encode("utf-8"))
    assert etree.QName(root).localname == "VoidedDocuments"
    assert root.findtext(f"{{{NS_CBC}}}ID") == "RA-20240315-1"
    lineas = root.findall(f"{{{NS_SAC}}}VoidedDocumentsLine")
    assert len(lineas) == 1
    assert lineas[0].findtext(f"{{{NS_SAC}}}DocumentSerialID") == "B001"
    assert lineas[0].findtext(f"{{{NS_SAC}}}DocumentNumberID") == "00000001"
    assert lineas[0].findtext(f"{{{NS_SAC}}}VoidReasonDescription") == "Error en el monto"


def test_segunda_comunicacion_del_dia(bajas, boleta_aceptada):
    bajas.generar_comunicacion_baja(RUC, [boleta_aceptada.numero], "Error")
    segunda = bajas.generar_comunicacion_baja(RUC, [boleta_aceptada.numero], "Error",
                                              fecha_baja=date(2024, 3, 14))

    assert segunda.numero == "RA-20240315-2"
    root = etree.fromstring(segunda.xml_original.encode("utf-8"))
    assert root.findtext(f"{{{NS_CBC}}}ReferenceDate") == "2024-03-14"


def test_comunicacion_queda_guardada_sin_firmar(bajas, comunicaciones, boleta_aceptada):
    comunicacion = bajas.generar_comunicacion_baja(RUC, [boleta_aceptada.numero], "Error en el monto")

    guardada = comunicaciones.get_by_tenant_and_number(RUC, comunicacion.numero)
    assert guardada is not None
    assert guardada.xml_original == comunicacion.xml_original
    assert guardada.xml_firmado is None
    assert guardada.ticket is None


def test_fallo_al_guardar_comunicacion_informa_el_numero(bajas, comunicaciones, boleta_aceptada, caplog):
    comunicaciones.fallar_save = True

    with caplog.at_level(logging.CRITICAL, logger="sunat_cpe.bajas"):
        with pytest.raises(PersistenceError) as exc_info:
            bajas.generar_comunicacion_baja(RUC, [boleta_aceptada.numero], "Error")

    assert exc_info.value.numero == "RA-20240315-1"
    assert "RA-20240315-1" in caplog.text


def test_enviar_comunicacion_guarda_firma_y_ticket(bajas, comunicaciones, boleta_aceptada, stub_service):
    comunicacion = bajas.generar_comunicacion_baja(RUC, [boleta_aceptada.numero], "Error en el monto")
    stub_service.respuestas.append("1710532800123")

    enviada = bajas.enviar_comunicacion_baja(RUC, comunicacion.numero)

    assert enviada.ticket == "1710532800123"
    assert verify_signature(enviada.xml_firmado)
    operacion, kwargs = stub_service.llamadas[0]
    assert operacion == "sendSummary"
    assert kwargs["fileName"] == f"{RUC}-RA-20240315-1.zip"

    guardada = comunicaciones.get_by_tenant_and_number(RUC, comunicacion.numero)
    assert guardada.ticket == "1710532800123"
    assert guardada.xml_firmado == enviada.xml_firmado


def test_timeout_en_envio_permite_reenviar_sin_refirmar(bajas, comunicaciones, boleta_aceptada, stub_service):
    comunicacion = bajas.generar_comunicacion_baja(RUC, [boleta_aceptada.numero], "Error")
    stub_service.respuestas.append(requests.Timeout("read timed out"))

    with pytest.raises(TransientError):
        bajas.enviar_comunicacion_baja(RUC, comunicacion.numero)

    # La comunicación no se pierde: queda firmada y sin ticket
    guardada = comunicaciones.get_by_tenant_and_number(RUC, comunicacion.numero)
    assert guardada.ticket is None
    firma = guardada.xml_firmado
    assert firma is not None

    stub_service.respuestas.append("1710532800999")
    enviada = bajas.enviar_comunicacion_baja(RUC, comunicacion.numero)

    assert enviada.ticket == "1710532800999"
    guardada = comunicaciones.get_by_tenant_and_number(RUC, comunicacion.numero)
    assert guardada.ticket == "1710532800999"
    assert guardada.xml_firmado == firma
    assert [op for op, _ in stub_service.llamadas] == ["sendSummary", "sendSummary"]


def test_comunicacion_con_ticket_no_se_reenvia(bajas, boleta_aceptada, stub_service):
    comunicacion = bajas.generar_comunicacion_baja(RUC, [boleta_aceptada.numero], "Error")
    stub_service.respuestas.append("1710532800123")
    bajas.enviar_comunicacion_baja(RUC, comunicacion.numero)

    otra_vez = bajas.enviar_comunicacion_baja(RUC, comunicacion.numero)

    assert otra_vez.ticket == "1710532800123"
    assert len(stub_service.llamadas) == 1


def test_enviar_comunicacion_inexistente(bajas):
    with pytest.raises(DocumentNotFoundError):
        bajas.enviar_comunicacion_baja(RUC, "RA-20240315-9")


def test_consultar_ticket(bajas, stub_service, cdr_zip):
    stub_service.respuestas.append(SimpleNamespace(statusCode="0", content=cdr_zip("0", "aceptada")))

    cdr = bajas.consultar_ticket(RUC, "1710532800123")

    assert cdr.codigo == "0"
    assert cdr.ticket == "1710532800123"


def test_consultar_ticket_guarda_cdr_final(bajas, comunicaciones, boleta_aceptada, stub_service, cdr_zip):
    comunicacion = bajas.generar_comunicacion_baja(RUC, [boleta_aceptada.numero], "Error")
    stub_service.respuestas.append("1710532800123")
    bajas.enviar_comunicacion_baja(RUC, comunicacion.numero)

    stub_service.respuestas.append(SimpleNamespace(statusCode="98", content=None))
    assert bajas.consultar_ticket(RUC, "1710532800123").codigo == "PROCESANDO"
    assert comunicaciones.get_by_tenant_and_number(RUC, comunicacion.numero).cdr is None

    stub_service.respuestas.append(SimpleNamespace(statusCode="0", content=cdr_zip("0", "aceptada")))
    bajas.consultar_ticket(RUC, "1710532800123")

    guardada = bajas.consultar_comunicacion(RUC, comunicacion.numero)
    assert guardada.cdr.codigo == "0"
    assert guardada.cdr.ticket == "1710532800123"


def test_baja_de_boleta_no_aceptada(bajas, builder, empresa, receptor_dni, items):
    boleta = builder.build(RUC, TipoComprobante.BOLETA, empresa.emisor(), receptor_dni, items)

    with pytest.raises(DocumentNotAcceptedError):
        bajas.generar_comunicacion_baja(RUC, [boleta.numero], "Error")


def test_baja_de_factura_no_permitida(bajas, factura_aceptada):
    with pytest.raises(ValidationError):
        bajas.generar_comunicacion_baja(RUC, [factura_aceptada.numero], "Error")


@pytest.mark.parametrize("comprobantes,motivo", [([], "Error"), (["B001-00000001"], " ")])
def test_baja_sin_datos(bajas, counters, comprobantes, motivo):
    with pytest.raises(ValidationError):
        bajas.generar_comunicacion_baja(RUC, comprobantes, motivo)
    assert counters.llamadas == 0


def test_baja_de_comprobante_inexistente(bajas):
    with pytest.raises(DocumentNotFoundError):
        bajas.generar_comunicacion_baja(RUC, ["B001-00000099"], "Error")


def test_nota_de_credito_anula_factura(bajas, factura_aceptada):
    nota = bajas.generar_nota_credito(RUC, factura_aceptada.numero, "01", "Anulación de la operación")

    assert nota.tipo == TipoComprobante.NOTA_CREDITO
    assert nota.numero == "F801-00000001"
    assert nota.estado == EstadoComprobante.PENDIENTE
    assert nota.total == factura_aceptada.total
    assert nota.referencia.numero == factura_aceptada.numero
    root = etree.fromstring(nota.xml_original.encode("utf-8"))
    assert root.findtext(
        f"{{{NS_CAC}}}BillingReference/{{{NS_CAC}}}InvoiceDocumentReference/{{{NS_CBC}}}DocumentTypeCode"
    ) == "01"


def test_nota_de_credito_sobre_boleta(bajas, boleta_aceptada):
    with pytest.raises(ValidationError):
        bajas.generar_nota_credito(RUC, boleta_aceptada.numero, "01", "Anulación")


def test_nota_de_credito_sobre_factura_no_aceptada(bajas, builder, empresa, receptor_ruc, items):
    factura = builder.build(RUC, TipoComprobante.FACTURA, empresa.emisor(), receptor_ruc, items)

    with pytest.raises(DocumentNotAcceptedError):
        bajas.generar_nota_credito(RUC, factura.numero, "01", "Anulación")
