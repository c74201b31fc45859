"""
Cliente SOAP del billService de SUNAT (sendBill, sendSummary, getStatus).

Traduce los errores de zeep/requests a la jerarquía propia:
- Fault SOAP                -> RemoteFaultError (no se reintenta)
- timeout / conexión / 5xx  -> TransientError (se reintenta)
- respuesta sin CDR         -> NoReceiptError
"""
import base64
import binascii
import logging
import zipfile
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple, Union

import requests
from lxml import etree
from zeep import Client
from zeep.exceptions import Fault, TransportError
from zeep.transports import Transport
from zeep.wsse.username import UsernameToken

from .empaquetado import nombre_zip, unpack
from .errors import NoReceiptError, RemoteFaultError, SubmissionError, TransientError
from .models import CDR, Credenciales

logger = logging.getLogger(__name__)

CODIGO_TICKET = "TICKET"
CODIGO_PROCESANDO = "PROCESANDO"
STATUS_EN_PROCESO = "98"

_XML_PARSER = etree.XMLParser(resolve_entities=False, no_network=True)


def security_header(credenciales: Credenciales) -> UsernameToken:
    """
    WS-Security de SUNAT: usuario = RUC + usuario SOL, clave SOL en texto
    plano (PasswordText) y sin Timestamp.
    """
    return UsernameToken(
        f"{credenciales.ruc}{credenciales.usuario}",
        credenciales.password,
        use_digest=False,
    )


def leer_respuesta(xml: bytes) -> Tuple[str, str]:
    """Extrae (ResponseCode, Description) del ApplicationResponse."""
    try:
        root = etree.fromstring(xml, _XML_PARSER)
    except etree.XMLSyntaxError as exc:
        raise NoReceiptError(f"El CDR no es un XML válido: {exc}") from exc

    codigo = root.xpath("string(//*[local-name()='ResponseCode'][1])").strip()
    descripcion = root.xpath("string(//*[local-name()='Description'][1])").strip()
    if not codigo:
        raise NoReceiptError("El CDR no contiene ResponseCode")
    return codigo, descripcion


def unwrap_receipt(payload: Union[str, bytes, None], fecha: Optional[datetime] = None) -> CDR:
    """
    Abre el applicationResponse: ZIP (en base64 o ya decodificado por zeep)
    con un único XML adentro.
    """
    if not payload:
        raise NoReceiptError("SUNAT no devolvió CDR")

    try:
        if isinstance(payload, bytes) and payload[:2] == b"PK":
            data = payload
        else:
            data = base64.b64decode(payload, validate=False)
        _, xml = unpack(data)
    except (binascii.Error, zipfile.BadZipFile, ValueError) as exc:
        raise NoReceiptError(f"No se pudo abrir el CDR: {exc}") from exc

    # El CDR se guarda tal cual llegó: sin reemplazar bytes que no sean UTF-8
    try:
        texto = xml.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise NoReceiptError(f"El CDR no está codificado en UTF-8: {exc}") from exc

    codigo, descripcion = leer_respuesta(xml)
    return CDR(
        codigo=codigo,
        mensaje=descripcion,
        xml=texto,
        fecha_recepcion=fecha or datetime.now(timezone.utc),
    )


class SubmissionClient:

    def __init__(
        self,
        wsdl: str,
        timeout: int = 60,
        client_factory: Optional[Callable[[Credenciales], object]] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.wsdl = wsdl
        self.timeout = timeout
        self.client_factory = client_factory or self._zeep_client
        self.clock = clock

    def _zeep_client(self, credenciales: Credenciales) -> Client:
        session = requests.Session()
        session.verify = True
        transport = Transport(session=session, timeout=self.timeout, operation_timeout=self.timeout)
        return Client(wsdl=self.wsdl, transport=transport, wsse=security_header(credenciales))

    def _service(self, empresa_ruc: str, credenciales: Credenciales):
        if credenciales.ruc != empresa_ruc:
            raise SubmissionError(f"Las credenciales SOL no corresponden a la empresa {empresa_ruc}")
        try:
            return self.client_factory(credenciales).service
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientError(f"No se pudo obtener el WSDL de SUNAT: {exc}") from exc

    @staticmethod
    def _call(operation, **kwargs):
        try:
            return operation(**kwargs)
        except Fault as exc:
            raise RemoteFaultError(exc.message or str(exc), code=exc.code) from exc
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientError(f"Error de red/timeout con SUNAT: {exc}") from exc
        except TransportError as exc:
            if exc.status_code and exc.status_code >= 500:
                raise TransientError(f"SUNAT respondió HTTP {exc.status_code}") from exc
            raise RemoteFaultError(f"HTTP {exc.status_code}: {exc.message}") from exc

    @staticmethod
    def _zip_name(archive: bytes) -> str:
        # El ZIP se llama igual que su única entrada, con extensión .zip
        try:
            entrada, _ = unpack(archive)
        except (zipfile.BadZipFile, ValueError) as exc:
            raise SubmissionError(f"El paquete a enviar no es un ZIP válido: {exc}") from exc
        return nombre_zip(entrada.rsplit(".", 1)[0])

    def submit(self, empresa_ruc: str, credenciales: Credenciales, archive: bytes) -> CDR:
        """sendBill: envío síncrono de facturas, boletas y notas."""
        file_name = self._zip_name(archive)
        service = self._service(empresa_ruc, credenciales)

        logger.info("Enviando %s a SUNAT (empresa %s)", file_name, empresa_ruc)
        respuesta = self._call(service.sendBill, fileName=file_name, contentFile=archive)

        cdr = unwrap_receipt(respuesta, self.clock())
        logger.info("CDR recibido para %s: código %s", file_name, cdr.codigo)
        return cdr

    def send_summary(self, empresa_ruc: str, credenciales: Credenciales, archive: bytes) -> CDR:
        """sendSummary: SUNAT responde con un ticket que se consulta luego."""
        file_name = self._zip_name(archive)
        service = self._service(empresa_ruc, credenciales)

        logger.info("Enviando resumen %s a SUNAT (empresa %s)", file_name, empresa_ruc)
        ticket = self._call(service.sendSummary, fileName=file_name, contentFile=archive)
        if not ticket:
            raise NoReceiptError("SUNAT no devolvió ticket")

        return CDR(
            codigo=CODIGO_TICKET,
            mensaje=f"Ticket generado: {ticket}",
            fecha_recepcion=self.clock(),
            ticket=str(ticket),
        )

    def check_ticket(self, empresa_ruc: str, credenciales: Credenciales, ticket: str) -> CDR:
        """getStatus: mientras SUNAT procesa, statusCode es 98."""
        service = self._service(empresa_ruc, credenciales)
        status = self._call(service.getStatus, ticket=ticket)

        status_code = str(getattr(status, "statusCode", "") or "")
        content = getattr(status, "content", None)
        if status_code == STATUS_EN_PROCESO or (not content and not status_code):
            return CDR(
                codigo=CODIGO_PROCESANDO,
                mensaje="El ticket está siendo procesado por SUNAT",
                fecha_recepcion=self.clock(),
                ticket=ticket,
            )

        cdr = unwrap_receipt(content, self.clock())
        return cdr.model_copy(update={"ticket": ticket})
