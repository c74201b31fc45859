"""
Firma digital XML-DSig (enveloped) de los comprobantes UBL.

- Canonicalización C14N inclusiva
- RSA-SHA256 sobre SignedInfo, digest SHA-256 del documento (Reference URI="")
- La firma va dentro de ext:UBLExtensions/ext:UBLExtension/ext:ExtensionContent
"""
import base64
import hashlib
import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.serialization import Encoding, pkcs12
from lxml import etree

from .errors import (
    AlreadySignedError,
    CertificateError,
    CertificateExpiredError,
    CertificateMismatchError,
    CertificateNotFoundError,
    DocumentNotFoundError,
    EmptyDocumentError,
    SigningError,
)
from .models import Certificado, Comprobante
from .repositorios import CertificateStore, DocumentStore
from .ubl import ID_FIRMA, NS_DS, NS_EXT

logger = logging.getLogger(__name__)

C14N_ALG = "http://www.w3.org/TR/2001/REC-xml-c14n-20010315"
RSA_SHA256 = "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256"
SHA256 = "http://www.w3.org/2001/04/xmlenc#sha256"
ENVELOPED = "http://www.w3.org/2000/09/xmldsig#enveloped-signature"


def _utc(valor: datetime) -> datetime:
    # Fechas sin zona se toman como UTC
    if valor.tzinfo is None:
        return valor.replace(tzinfo=timezone.utc)
    return valor


def _canonicalize(element) -> bytes:
    return etree.tostring(element, method="c14n", exclusive=False, with_comments=False)


def _cargar_pkcs12(archivo: bytes, password: str) -> Tuple[object, x509.Certificate]:
    try:
        private_key, cert, _ = pkcs12.load_key_and_certificates(
            archivo, password.encode("utf-8") if password else None
        )
    except (ValueError, TypeError) as exc:
        raise SigningError(f"Error al cargar el archivo PKCS12: {exc}") from exc

    if private_key is None or cert is None:
        raise SigningError("No se pudo extraer clave privada/certificado desde el archivo PKCS12.")
    return private_key, cert


def leer_certificado_pkcs12(
    ruc: str, archivo: bytes, password: str, ahora: Optional[datetime] = None
) -> Certificado:
    """
    Arma un `Certificado` a partir de un .pfx/.p12 leyendo las fechas de
    vigencia y el emisor del propio X.509. Rechaza certificados ya vencidos.
    """
    if not archivo:
        raise CertificateError("El archivo del certificado está vacío")
    if not password:
        raise CertificateError("La contraseña del certificado es obligatoria")

    try:
        _, cert = _cargar_pkcs12(archivo, password)
    except SigningError as exc:
        raise CertificateError(str(exc)) from exc

    emitido = cert.not_valid_before_utc
    vence = cert.not_valid_after_utc
    ahora = _utc(ahora or datetime.now(timezone.utc))
    if ahora > vence:
        raise CertificateExpiredError(f"El certificado venció el {vence.isoformat()}")

    return Certificado(
        ruc=ruc,
        archivo=archivo,
        password=password,
        emitido=emitido,
        vence=vence,
        emisor=cert.issuer.rfc4514_string(),
    )


def _firma_existente(root) -> bool:
    return root.find(f".//{{{NS_DS}}}Signature") is not None


def _contenedor_firma(root):
    """ExtensionContent libre donde se inserta la firma (se crea si no existe)."""
    for content in root.iter(f"{{{NS_EXT}}}ExtensionContent"):
        if len(content) == 0:
            return content
    exts = root.find(f"{{{NS_EXT}}}UBLExtensions")
    if exts is None:
        exts = etree.Element(f"{{{NS_EXT}}}UBLExtensions")
        root.insert(0, exts)
    ext = etree.SubElement(exts, f"{{{NS_EXT}}}UBLExtension")
    return etree.SubElement(ext, f"{{{NS_EXT}}}ExtensionContent")


def _ds(parent, tag: str, text: Optional[str] = None, **attrs):
    el = etree.SubElement(parent, f"{{{NS_DS}}}{tag}", **attrs)
    if text is not None:
        el.text = text
    return el


def firmar_xml(raw_xml: str, private_key, cert: x509.Certificate) -> str:
    """Firma el XML con la clave y certificado dados. No valida vigencia."""
    parser = etree.XMLParser(remove_blank_text=False)
    root = etree.fromstring(raw_xml.encode("utf-8"), parser)

    # 1) Digest del documento sin firma
    digest = base64.b64encode(hashlib.sha256(_canonicalize(root)).digest()).decode("ascii")

    # 2) Estructura <ds:Signature>
    signature = etree.Element(f"{{{NS_DS}}}Signature", Id=ID_FIRMA, nsmap={"ds": NS_DS})
    signed_info = _ds(signature, "SignedInfo")
    _ds(signed_info, "CanonicalizationMethod", Algorithm=C14N_ALG)
    _ds(signed_info, "SignatureMethod", Algorithm=RSA_SHA256)
    reference = _ds(signed_info, "Reference", URI="")
    transforms = _ds(reference, "Transforms")
    _ds(transforms, "Transform", Algorithm=ENVELOPED)
    _ds(reference, "DigestMethod", Algorithm=SHA256)
    _ds(reference, "DigestValue", digest)
    _ds(signature, "SignatureValue", "")
    key_info = _ds(signature, "KeyInfo")
    x509_data = _ds(key_info, "X509Data")
    _ds(x509_data, "X509Certificate", base64.b64encode(cert.public_bytes(Encoding.DER)).decode("ascii"))

    # 3) Insertamos sin tail para que quitarla deje el documento igual que antes
    _contenedor_firma(root).append(signature)

    # 4) Serializar + reparsear: SignedInfo se canonicaliza en su contexto final
    root = etree.fromstring(etree.tostring(root, encoding="UTF-8"))
    signed_info = root.find(f".//{{{NS_DS}}}Signature/{{{NS_DS}}}SignedInfo")
    firma = private_key.sign(_canonicalize(signed_info), padding.PKCS1v15(), hashes.SHA256())
    root.find(f".//{{{NS_DS}}}Signature/{{{NS_DS}}}SignatureValue").text = (
        base64.b64encode(firma).decode("ascii")
    )

    return etree.tostring(root, xml_declaration=True, encoding="UTF-8").decode("utf-8")


def verify_signature(signed_xml: str) -> bool:
    """
    Recalcula el digest del documento y verifica SignatureValue con el
    certificado embebido. Cualquier cambio posterior a la firma da False.
    """
    try:
        root = etree.fromstring(signed_xml.encode("utf-8"))
        signature = root.find(f".//{{{NS_DS}}}Signature")
        if signature is None:
            return False

        signed_info = signature.find(f"{{{NS_DS}}}SignedInfo")
        digest_esperado = signed_info.findtext(f".//{{{NS_DS}}}DigestValue")
        firma = base64.b64decode(signature.findtext(f"{{{NS_DS}}}SignatureValue") or "")
        cert_der = base64.b64decode(signature.findtext(f".//{{{NS_DS}}}X509Certificate") or "")
        cert = x509.load_der_x509_certificate(cert_der)

        signed_info_c14n = _canonicalize(signed_info)

        # Transformación enveloped: el documento sin la firma
        signature.getparent().remove(signature)
        digest = base64.b64encode(hashlib.sha256(_canonicalize(root)).digest()).decode("ascii")
        if digest != digest_esperado:
            return False

        cert.public_key().verify(firma, signed_info_c14n, padding.PKCS1v15(), hashes.SHA256())
        return True
    except (InvalidSignature, etree.XMLSyntaxError, ValueError, AttributeError):
        return False


class Signer:
    """Firma comprobantes con el certificado vigente de cada empresa."""

    def __init__(
        self,
        certificados: CertificateStore,
        documentos: Optional[DocumentStore] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.certificados = certificados
        self.documentos = documentos
        self.clock = clock

    def _certificado_vigente(self, empresa_ruc: str) -> Certificado:
        certificado = self.certificados.get_by_tenant(empresa_ruc)
        if certificado is None:
            raise CertificateNotFoundError(f"La empresa {empresa_ruc} no tiene certificado cargado")
        if certificado.ruc != empresa_ruc:
            raise CertificateMismatchError(
                f"El certificado pertenece a {certificado.ruc}, no a {empresa_ruc}"
            )

        ahora = _utc(self.clock())
        if not (_utc(certificado.emitido) <= ahora <= _utc(certificado.vence)):
            logger.warning(
                "Certificado de empresa %s fuera de vigencia. Válido: %s hasta %s. Ahora: %s",
                empresa_ruc, certificado.emitido, certificado.vence, ahora,
            )
            raise CertificateExpiredError(
                f"Certificado fuera de vigencia. Válido desde {certificado.emitido} hasta {certificado.vence}"
            )
        return certificado

    def sign(self, empresa_ruc: str, raw_xml: str) -> str:
        if not raw_xml or not raw_xml.strip():
            raise EmptyDocumentError("El XML a firmar está vacío")

        try:
            root = etree.fromstring(raw_xml.encode("utf-8"))
        except etree.XMLSyntaxError as exc:
            raise SigningError(f"XML mal formado al intentar firmar: {exc}") from exc
        if _firma_existente(root):
            raise AlreadySignedError("El XML ya contiene una firma digital")

        certificado = self._certificado_vigente(empresa_ruc)
        private_key, cert = _cargar_pkcs12(certificado.archivo, certificado.password)

        try:
            signed = firmar_xml(raw_xml, private_key, cert)
        except (ValueError, TypeError, etree.LxmlError) as exc:
            raise SigningError(f"Error al firmar el XML: {exc}") from exc

        logger.info("XML firmado para la empresa %s", empresa_ruc)
        return signed

    def sign_document(self, empresa_ruc: str, numero: str) -> Comprobante:
        """Firma un comprobante guardado y persiste el XML firmado (una sola vez)."""
        if self.documentos is None:
            raise SigningError("Signer sin almacén de comprobantes")

        comprobante = self.documentos.get_by_tenant_and_number(empresa_ruc, numero)
        if comprobante is None:
            raise DocumentNotFoundError(f"Comprobante {numero} no encontrado")
        if comprobante.xml_firmado:
            raise AlreadySignedError(f"El comprobante {numero} ya está firmado")

        signed = self.sign(empresa_ruc, comprobante.xml_original)
        # Condicional en el almacén: si otro proceso firmó antes, AlreadySignedError
        self.documentos.set_signed_xml(empresa_ruc, numero, signed)
        return comprobante.model_copy(update={"xml_firmado": signed})
