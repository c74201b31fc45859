import base64
import io
import zipfile
from types import SimpleNamespace

import pytest
import requests
from zeep.exceptions import Fault, TransportError

from sunat_cpe.empaquetado import pack
from sunat_cpe.errors import NoReceiptError, RemoteFaultError, SubmissionError, TransientError
from sunat_cpe.sunat import CODIGO_PROCESANDO, CODIGO_TICKET, security_header, unwrap_receipt

from conftest import OTRO_RUC, RUC

STEM = "20123456789-03-B001-00000001"


@pytest.fixture
def archive():
    return pack("<Invoice/>", STEM)


def test_security_header_concatena_ruc_y_usuario(empresa):
    token = security_header(empresa.credenciales)

    assert token.username == "20123456789MODDATOS"
    assert token.password == "moddatos"
    assert not token.use_digest


def test_submit_aceptado(client, stub_service, empresa, archive, cdr_zip):
    stub_service.respuestas.append(cdr_zip("0", "La Boleta numero B001-00000001, ha sido aceptada"))

    cdr = client.submit(RUC, empresa.credenciales, archive)

    assert cdr.codigo == "0"
    assert "aceptada" in cdr.mensaje
    assert "ApplicationResponse" in cdr.xml
    operacion, kwargs = stub_service.llamadas[0]
    assert operacion == "sendBill"
    assert kwargs == {"fileName": f"{STEM}.zip", "contentFile": archive}


def test_submit_cdr_en_base64(client, stub_service, empresa, archive, cdr_zip):
    stub_service.respuestas.append(base64.b64encode(cdr_zip("2800", "El RUC del receptor no existe")))

    cdr = client.submit(RUC, empresa.credenciales, archive)

    assert (cdr.codigo, cdr.mensaje) == ("2800", "El RUC del receptor no existe")


def test_fault_es_remoto(client, stub_service, empresa, archive):
    stub_service.respuestas.append(Fault("El usuario no ha sido autenticado", code="soap-env:Client.0102"))

    with pytest.raises(RemoteFaultError) as exc_info:
        client.submit(RUC, empresa.credenciales, archive)
    assert exc_info.value.code == "soap-env:Client.0102"


@pytest.mark.parametrize("error", [
    requests.Timeout("read timed out"),
    requests.ConnectionError("connection reset"),
    TransportError("Service Unavailable", status_code=503),
])
def test_errores_transitorios(client, stub_service, empresa, archive, error):
    stub_service.respuestas.append(error)

    with pytest.raises(TransientError):
        client.submit(RUC, empresa.credenciales, archive)


def test_http_4xx_no_es_transitorio(client, stub_service, empresa, archive):
    stub_service.respuestas.append(TransportError("Forbidden", status_code=403))

    with pytest.raises(RemoteFaultError):
        client.submit(RUC, empresa.credenciales, archive)


@pytest.mark.parametrize("respuesta", [None, b"", b"no es un zip"])
def test_respuesta_sin_cdr(client, stub_service, empresa, archive, respuesta):
    stub_service.respuestas.append(respuesta)

    with pytest.raises(NoReceiptError):
        client.submit(RUC, empresa.credenciales, archive)


def test_credenciales_de_otra_empresa(client, stub_service, empresa, archive):
    with pytest.raises(SubmissionError):
        client.submit(OTRO_RUC, empresa.credenciales, archive)
    assert stub_service.llamadas == []


def test_paquete_invalido(client, empresa):
    with pytest.raises(SubmissionError):
        client.submit(RUC, empresa.credenciales, b"no es un zip")


def test_send_summary_devuelve_ticket(client, stub_service, empresa):
    stub_service.respuestas.append("1703154974517")

    cdr = client.send_summary(RUC, empresa.credenciales, pack("<VoidedDocuments/>", f"{RUC}-RA-20240315-1"))

    assert cdr.codigo == CODIGO_TICKET
    assert cdr.ticket == "1703154974517"
    assert stub_service.llamadas[0][1]["fileName"] == f"{RUC}-RA-20240315-1.zip"


def test_check_ticket_en_proceso(client, stub_service, empresa):
    stub_service.respuestas.append(SimpleNamespace(statusCode="98", content=None))

    cdr = client.check_ticket(RUC, empresa.credenciales, "1703154974517")

    assert cdr.codigo == CODIGO_PROCESANDO
    assert cdr.ticket == "1703154974517"


def test_check_ticket_terminado(client, stub_service, empresa, cdr_zip):
    stub_service.respuestas.append(
        SimpleNamespace(statusCode="0", content=cdr_zip("0", "La Comunicacion de baja ha sido aceptada"))
    )

    cdr = client.check_ticket(RUC, empresa.credenciales, "1703154974517")

    assert cdr.codigo == "0"
    assert cdr.ticket == "1703154974517"


def test_unwrap_receipt_sin_response_code():
    with pytest.raises(NoReceiptError):
        unwrap_receipt(pack("<ApplicationResponse/>", "R-x"))


def test_unwrap_receipt_no_utf8():
    xml = (
        '<?xml version="1.0" encoding="ISO-8859-1"?>'
        '<ar:ApplicationResponse'
        ' xmlns:ar="urn:oasis:names:specification:ubl:schema:xsd:ApplicationResponse-2"'
        ' xmlns:cac="urn:oasis:names:specification:ubl:schema:xsd:CommonAggregateComponents-2"'
        ' xmlns:cbc="urn:oasis:names:specification:ubl:schema:xsd:CommonBasicComponents-2">'
        '<cac:DocumentResponse><cac:Response>'
        '<cbc:ResponseCode>0</cbc:ResponseCode>'
        '<cbc:Description>La Boleta número B001-00000001, ha sido aceptada</cbc:Description>'
        '</cac:Response></cac:DocumentResponse>'
        '</ar:ApplicationResponse>'
    ).encode("latin-1")
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
        zf.writestr("R-20123456789-03-B001-00000001.xml", xml)

    with pytest.raises(NoReceiptError):
        unwrap_receipt(buffer.getvalue())


def test_unwrap_receipt_conserva_acentos(cdr_zip):
    cdr = unwrap_receipt(cdr_zip("0", "La Boleta número B001-00000001, ha sido aceptada"))

    assert "número" in cdr.xml
    assert "�" not in cdr.xml
