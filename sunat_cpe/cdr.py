import logging
from typing import Optional

from .models import CDR, EstadoComprobante
from .repositorios import DocumentStore
from .sunat import CODIGO_PROCESANDO, CODIGO_TICKET

logger = logging.getLogger(__name__)

PSEUDO_CODIGOS = frozenset({CODIGO_TICKET, CODIGO_PROCESANDO})


def determinar_estado(codigo: str) -> Optional[EstadoComprobante]:
    """
    Código de respuesta -> estado final.
      "0" (o cualquier cero numérico)  -> ACEPTADO
      TICKET / PROCESANDO              -> None (todavía no hay respuesta final)
      cualquier otro código            -> RECHAZADO
    Nunca devuelve PENDIENTE ni ENVIADO.
    """
    codigo = (codigo or "").strip()
    if codigo.upper() in PSEUDO_CODIGOS:
        return None
    if codigo.isdigit() and int(codigo) == 0:
        return EstadoComprobante.ACEPTADO
    return EstadoComprobante.RECHAZADO


class ResponseReconciler:
    """Único componente que lleva un comprobante a ACEPTADO o RECHAZADO."""

    def __init__(self, documentos: DocumentStore):
        self.documentos = documentos

    def reconcile(self, empresa_ruc: str, numero: str, cdr: CDR) -> Optional[EstadoComprobante]:
        estado = determinar_estado(cdr.codigo)
        if estado is None:
            logger.info("Comprobante %s sigue en proceso (%s); consultar más tarde", numero, cdr.codigo)
            return None

        motivo = cdr.mensaje if estado == EstadoComprobante.RECHAZADO else None
        self.documentos.attach_receipt(empresa_ruc, numero, cdr, estado, motivo)

        logger.info("Comprobante %s de %s conciliado como %s (código %s)",
                    numero, empresa_ruc, estado.value, cdr.codigo)
        return estado
