import logging
import time
from datetime import datetime, timezone
from typing import Callable, List, TypeVar

from .errors import TransientError
from .models import EstadoComprobante, RetryAttemptError, RetryResult
from .repositorios import DocumentStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryCoordinator:
    """
    Reintenta un envío a SUNAT con backoff exponencial.

    - Solo se reintenta TransientError; cualquier otro error sale de inmediato.
    - Antes del primer intento y tras cada falla el comprobante queda ENVIADO,
      así un corte a mitad de camino deja un estado retomable.
    - Al agotar los intentos devuelve success=False: quien llama lo pasa a PENDIENTE.
    """

    def __init__(
        self,
        documentos: DocumentStore,
        max_attempts: int = 4,
        initial_delay: float = 1.0,
        multiplier: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts debe ser al menos 1")
        self.documentos = documentos
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.multiplier = multiplier
        self.sleep = sleep

    def delay_for(self, intento: int) -> float:
        """Espera tras el intento N (1-based): 1s, 2s, 4s, ..."""
        return self.initial_delay * (self.multiplier ** (intento - 1))

    def execute_with_retry(
        self, operation: Callable[[], T], empresa_ruc: str, numero: str
    ) -> RetryResult:
        errores: List[RetryAttemptError] = []
        intento = 0

        self.documentos.set_state(empresa_ruc, numero, EstadoComprobante.ENVIADO)

        while intento < self.max_attempts:
            intento += 1
            try:
                data = operation()
            except TransientError as e:
                espera = self.delay_for(intento) if intento < self.max_attempts else 0.0
                errores.append(RetryAttemptError(
                    intento=intento,
                    fecha=datetime.now(timezone.utc),
                    error=str(e),
                    espera=espera,
                ))
                self.documentos.set_state(empresa_ruc, numero, EstadoComprobante.ENVIADO)

                if intento >= self.max_attempts:
                    break
                logger.warning(
                    "Intento %s/%s de %s falló: %s. Reintentando en %.1fs",
                    intento, self.max_attempts, numero, e, espera,
                )
                self.sleep(espera)
                continue

            logger.info("Comprobante %s enviado en el intento %s", numero, intento)
            return RetryResult(success=True, data=data, total_attempts=intento, errors=errores)

        logger.error(
            "Se agotaron los %s intentos de envío de %s (empresa %s)",
            self.max_attempts, numero, empresa_ruc,
        )
        return RetryResult(success=False, total_attempts=intento, errors=errores)
