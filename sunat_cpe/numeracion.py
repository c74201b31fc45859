import logging
import re
from typing import Dict

from .errors import AllocationError, InvalidSeriesError, StorageError
from .models import TipoComprobante
from .repositorios import CounterStore

logger = logging.getLogger(__name__)

# Una letra + 3 dígitos. Las notas siguen la letra del comprobante que afectan.
# La identidad de un comprobante es (RUC, número), así que los rangos no se pisan:
# facturas y boletas 000-799, notas de crédito 8xx, notas de débito 9xx.
PATRON_SERIE: Dict[TipoComprobante, re.Pattern] = {
    TipoComprobante.FACTURA: re.compile(r"^F[0-7]\d{2}$"),
    TipoComprobante.BOLETA: re.compile(r"^B[0-7]\d{2}$"),
    TipoComprobante.NOTA_CREDITO: re.compile(r"^[FB]8\d{2}$"),
    TipoComprobante.NOTA_DEBITO: re.compile(r"^[FB]9\d{2}$"),
}

SERIES_POR_DEFECTO: Dict[TipoComprobante, str] = {
    TipoComprobante.FACTURA: "F001",
    TipoComprobante.BOLETA: "B001",
}

# Parte numérica por defecto de las notas; la letra la pone el comprobante afectado
SUFIJO_NOTA: Dict[TipoComprobante, str] = {
    TipoComprobante.NOTA_CREDITO: "801",
    TipoComprobante.NOTA_DEBITO: "901",
}


def validar_serie(tipo: TipoComprobante, serie: str) -> None:
    if not serie or not PATRON_SERIE[TipoComprobante(tipo)].match(serie):
        raise InvalidSeriesError(serie, TipoComprobante(tipo).value)


def formatear_numero(serie: str, correlativo: int) -> str:
    """B001 + 123 -> 'B001-00000123'"""
    return f"{serie}-{correlativo:08d}"


class NumberAllocator:
    """
    Entrega correlativos únicos por (empresa, tipo, serie).
    Toda la concurrencia se resuelve en el almacén con un incremento atómico;
    aquí no se lee el contador para luego escribirlo.
    """

    def __init__(self, counters: CounterStore):
        self.counters = counters

    def allocate(self, empresa_ruc: str, tipo: TipoComprobante, serie: str) -> int:
        tipo = TipoComprobante(tipo)
        validar_serie(tipo, serie)

        try:
            correlativo = self.counters.atomic_increment(empresa_ruc, tipo.value, serie)
        except AllocationError:
            raise
        except StorageError as exc:
            raise AllocationError(
                f"No se pudo obtener el correlativo para {empresa_ruc} {tipo.value} {serie}: {exc}"
            ) from exc

        if not isinstance(correlativo, int) or correlativo < 1:
            raise AllocationError(f"El contador devolvió un correlativo inválido: {correlativo!r}")

        logger.debug("Correlativo %s asignado a %s %s-%s", correlativo, empresa_ruc, tipo.value, serie)
        return correlativo

    def allocate_number(self, empresa_ruc: str, tipo: TipoComprobante, serie: str) -> str:
        return formatear_numero(serie, self.allocate(empresa_ruc, tipo, serie))
