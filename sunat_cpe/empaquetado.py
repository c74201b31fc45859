import io
import zipfile
from typing import Tuple, Union


def nombre_archivo(ruc: str, tipo: str, numero: str) -> str:
    """
    Nombre base que exige SUNAT: RUC-TIPO-SERIE-CORRELATIVO
    ej. 20123456789-01-F001-00000001
    """
    return f"{ruc}-{getattr(tipo, 'value', tipo)}-{numero}"


def nombre_zip(stem: str) -> str:
    return f"{stem}.zip"


def pack(signed_xml: Union[str, bytes], stem: str) -> bytes:
    """
    Comprime el XML firmado en un ZIP con una sola entrada `<stem>.xml`.
    El contenido se guarda tal cual, sin re-serializar.
    """
    contenido = signed_xml.encode("utf-8") if isinstance(signed_xml, str) else signed_xml

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
        zf.writestr(f"{stem}.xml", contenido)
    return buffer.getvalue()


def unpack(archive: bytes) -> Tuple[str, bytes]:
    """Devuelve (nombre, contenido) de la primera entrada XML del ZIP."""
    with zipfile.ZipFile(io.BytesIO(archive)) as zf:
        nombres = [n for n in zf.namelist() if not n.endswith("/")]
        if not nombres:
            raise ValueError("El ZIP no contiene archivos")
        xmls = [n for n in nombres if n.lower().endswith(".xml")]
        nombre = xmls[0] if xmls else nombres[0]
        return nombre, zf.read(nombre)
