from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Configuración del servicio, leída desde variables de entorno (o .env).
    El entorno 'homo' apunta a la beta de SUNAT; 'prod' a producción.
    """

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    ENVIRONMENT: str = "homo"

    # Endpoints billService de SUNAT
    SUNAT_WSDL_HOMO: str = "https://e-beta.sunat.gob.pe/ol-ti-itcpfegem-beta/billService?wsdl"
    SUNAT_WSDL_PROD: str = "https://e-factura.sunat.gob.pe/ol-ti-itcpfegem/billService?wsdl"
    SUNAT_TIMEOUT: int = 60  # segundos

    # Reintentos de envío
    RETRY_MAX_ATTEMPTS: int = 4
    RETRY_INITIAL_DELAY: float = 1.0
    RETRY_BACKOFF_MULTIPLIER: float = 2.0

    # Base de datos
    DB_HOST: str = "localhost"
    DB_USER: str = "postgres"
    DB_PASS: str = ""
    DB_NAME: str = "sunat_cpe"
    DB_PORT: str = "5432"
    DB_SSLMODE: str = "disable"
    DB_MIN_CONN: int = 1
    DB_MAX_CONN: int = 10  # Ajusta según la carga esperada

    PDF_DIR: str = "comprobantes"
    CORS_ORIGINS: str = "*"
    LOG_LEVEL: str = "INFO"

    @property
    def sunat_wsdl(self) -> str:
        env = self.ENVIRONMENT.strip().lower()
        return self.SUNAT_WSDL_PROD if env == "prod" else self.SUNAT_WSDL_HOMO

    @property
    def cors_origins(self) -> List[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]
