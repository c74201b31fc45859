import os
from io import BytesIO

import qrcode
from reportlab.lib.pagesizes import A4
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from .errors import DocumentNotAcceptedError
from .models import Comprobante, EstadoComprobante, TipoComprobante

NOMBRES_TIPO = {
    TipoComprobante.FACTURA: "FACTURA ELECTRÓNICA",
    TipoComprobante.BOLETA: "BOLETA DE VENTA ELECTRÓNICA",
    TipoComprobante.NOTA_CREDITO: "NOTA DE CRÉDITO ELECTRÓNICA",
    TipoComprobante.NOTA_DEBITO: "NOTA DE DÉBITO ELECTRÓNICA",
}


def contenido_qr(comprobante: Comprobante) -> str:
    """
    Texto del QR según SUNAT:
    RUC|TIPO|SERIE|NUMERO|IGV|TOTAL|FECHA|TIPODOC|NUMDOC|
    """
    campos = [
        comprobante.empresa_ruc,
        comprobante.tipo.value,
        comprobante.serie,
        str(comprobante.correlativo),
        f"{comprobante.igv:.2f}",
        f"{comprobante.total:.2f}",
        comprobante.fecha.strftime("%Y-%m-%d"),
        comprobante.receptor.tipo_documento,
        comprobante.receptor.numero_documento,
    ]
    return "|".join(campos) + "|"


def generar_qr(comprobante: Comprobante) -> bytes:
    """Genera el QR en PNG."""
    img = qrcode.make(contenido_qr(comprobante))

    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


def ruta_pdf(directorio: str, comprobante: Comprobante) -> str:
    """{directorio}/{ruc}/{tipo}_{numero}.pdf"""
    return os.path.join(
        directorio,
        comprobante.empresa_ruc,
        f"{comprobante.tipo.value}_{comprobante.numero}.pdf",
    )


def generar_pdf(comprobante: Comprobante, directorio: str = "comprobantes") -> str:
    """
    Genera la representación impresa con el QR, la guarda en
    {directorio}/{ruc}/ y devuelve la ruta al archivo.
    Solo para comprobantes ACEPTADOS por SUNAT.
    """
    if comprobante.estado != EstadoComprobante.ACEPTADO:
        raise DocumentNotAcceptedError(
            f"El comprobante {comprobante.numero} está {comprobante.estado.value}; "
            "solo se genera PDF de comprobantes aceptados"
        )

    qr_img = generar_qr(comprobante)

    # Carpeta por RUC
    pdf_path = ruta_pdf(directorio, comprobante)
    os.makedirs(os.path.dirname(pdf_path), exist_ok=True)

    emisor = comprobante.emisor
    receptor = comprobante.receptor
    moneda = comprobante.moneda.value

    c = canvas.Canvas(pdf_path, pagesize=A4)

    # Cabecera
    c.setFont("Helvetica-Bold", 13)
    c.drawString(50, 800, emisor.razon_social)
    c.setFont("Helvetica", 10)
    c.drawString(50, 785, f"RUC: {emisor.ruc}")
    c.drawString(50, 770, emisor.direccion.direccion)
    c.setFont("Helvetica-Bold", 12)
    c.drawString(330, 800, NOMBRES_TIPO[comprobante.tipo])
    c.drawString(330, 785, comprobante.numero)

    # Cliente
    c.setFont("Helvetica", 10)
    c.drawString(50, 740, f"Cliente: {receptor.nombre}")
    c.drawString(50, 725, f"Documento: {receptor.numero_documento}")
    c.drawString(50, 710, f"Fecha de Emisión: {comprobante.fecha.strftime('%d/%m/%Y')}")
    if comprobante.referencia is not None:
        c.drawString(50, 695, f"Documento que modifica: {comprobante.referencia.numero}")

    # Detalle
    y = 665
    c.setFont("Helvetica-Bold", 9)
    c.drawString(50, y, "Cant.")
    c.drawString(90, y, "Descripción")
    c.drawString(380, y, "P. Unit.")
    c.drawString(470, y, "Total")
    c.setFont("Helvetica", 9)
    for item in comprobante.items:
        y -= 15
        if y < 200:
            c.showPage()
            c.setFont("Helvetica", 9)
            y = 800
        c.drawString(50, y, format(item.cantidad, "f"))
        c.drawString(90, y, item.descripcion[:60])
        c.drawRightString(430, y, f"{item.precio_unitario:.2f}")
        c.drawRightString(520, y, f"{item.total:.2f}")

    # Totales
    y -= 30
    c.drawRightString(520, y, f"Op. Gravada: {moneda} {comprobante.subtotal:.2f}")
    c.drawRightString(520, y - 15, f"IGV: {moneda} {comprobante.igv:.2f}")
    c.setFont("Helvetica-Bold", 10)
    c.drawRightString(520, y - 30, f"Importe Total: {moneda} {comprobante.total:.2f}")

    # QR y leyenda
    c.drawImage(ImageReader(BytesIO(qr_img)), 50, 60, width=100, height=100)
    c.setFont("Helvetica", 8)
    c.drawString(160, 110, "Representación impresa del comprobante electrónico.")
    if comprobante.cdr is not None:
        c.drawString(160, 98, f"Aceptado por SUNAT: {comprobante.cdr.mensaje[:80]}")
    c.save()

    return pdf_path
