"""
Implementaciones sobre PostgreSQL de los almacenes (repositorios.py).

Toda la concurrencia queda del lado de la base:
- contadores con un único INSERT ... ON CONFLICT DO UPDATE ... RETURNING
- cambios de estado con UPDATE condicionado al estado actual
- XML firmado con UPDATE ... WHERE xml_firmado IS NULL
"""
import logging
from contextlib import contextmanager
from typing import Iterator, List, Optional

import psycopg2
from psycopg2 import Error, pool, sql
from psycopg2.extras import Json, RealDictCursor

from .config import Settings
from .errors import (
    AlreadySignedError,
    DocumentNotFoundError,
    InvalidStateTransitionError,
    StorageError,
)
from .models import (
    CDR,
    Certificado,
    Comprobante,
    ComunicacionBaja,
    Credenciales,
    Direccion,
    Empresa,
    EstadoComprobante,
    estados_previos,
)
from .repositorios import (
    CertificateStore,
    ComunicacionStore,
    CounterStore,
    DocumentStore,
    EmpresaStore,
)

logger = logging.getLogger(__name__)

DDL = """
CREATE TABLE IF NOT EXISTS empresas (
    ruc               VARCHAR(11) PRIMARY KEY,
    razon_social      TEXT NOT NULL,
    nombre_comercial  TEXT NOT NULL,
    direccion         JSONB NOT NULL,
    sol_usuario       TEXT NOT NULL,
    sol_password      TEXT NOT NULL,
    activo            BOOLEAN NOT NULL DEFAULT TRUE,
    fecha_creacion    TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS contadores (
    empresa_ruc  VARCHAR(11) NOT NULL,
    tipo         VARCHAR(2)  NOT NULL,
    serie        VARCHAR(16) NOT NULL,
    correlativo  BIGINT      NOT NULL,
    PRIMARY KEY (empresa_ruc, tipo, serie)
);

CREATE TABLE IF NOT EXISTS comprobantes (
    empresa_ruc          VARCHAR(11) NOT NULL,
    numero               VARCHAR(20) NOT NULL,
    tipo                 VARCHAR(2)  NOT NULL,
    fecha                TIMESTAMPTZ NOT NULL,
    emisor               JSONB NOT NULL,
    receptor             JSONB NOT NULL,
    items                JSONB NOT NULL,
    subtotal             NUMERIC(14, 2) NOT NULL,
    igv                  NUMERIC(14, 2) NOT NULL,
    total                NUMERIC(14, 2) NOT NULL,
    moneda               VARCHAR(3)  NOT NULL,
    referencia           JSONB,
    xml_original         TEXT NOT NULL,
    xml_firmado          TEXT,
    estado               VARCHAR(10) NOT NULL,
    cdr                  JSONB,
    motivo_rechazo       TEXT,
    fecha_creacion       TIMESTAMPTZ NOT NULL DEFAULT now(),
    fecha_actualizacion  TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (empresa_ruc, numero)
);

CREATE INDEX IF NOT EXISTS comprobantes_estado_idx ON comprobantes (empresa_ruc, estado);

CREATE TABLE IF NOT EXISTS comunicaciones_baja (
    empresa_ruc          VARCHAR(11) NOT NULL,
    numero               VARCHAR(20) NOT NULL,
    fecha                TIMESTAMPTZ NOT NULL,
    fecha_baja           DATE NOT NULL,
    comprobantes         JSONB NOT NULL,
    motivo               TEXT NOT NULL,
    xml_original         TEXT NOT NULL,
    xml_firmado          TEXT,
    ticket               VARCHAR(40),
    cdr                  JSONB,
    fecha_creacion       TIMESTAMPTZ NOT NULL DEFAULT now(),
    fecha_actualizacion  TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (empresa_ruc, numero)
);

CREATE INDEX IF NOT EXISTS comunicaciones_ticket_idx ON comunicaciones_baja (empresa_ruc, ticket);

CREATE TABLE IF NOT EXISTS certificados (
    empresa_ruc  VARCHAR(11) PRIMARY KEY,
    archivo      BYTEA NOT NULL,
    password     TEXT NOT NULL,
    emitido      TIMESTAMPTZ NOT NULL,
    vence        TIMESTAMPTZ NOT NULL,
    emisor       TEXT NOT NULL
);
"""


# ————————————————————————————————————————————————
# Pool de conexiones
# ————————————————————————————————————————————————
class Database:

    def __init__(self, settings: Settings):
        self.settings = settings
        self.pool: Optional[pool.ThreadedConnectionPool] = None

    def connect(self) -> None:
        s = self.settings
        try:
            # Threaded: FastAPI atiende los endpoints síncronos desde varios hilos
            self.pool = pool.ThreadedConnectionPool(
                minconn=s.DB_MIN_CONN,
                maxconn=s.DB_MAX_CONN,
                host=s.DB_HOST,
                user=s.DB_USER,
                password=s.DB_PASS,
                dbname=s.DB_NAME,
                port=s.DB_PORT,
                sslmode=s.DB_SSLMODE,
            )
        except psycopg2.OperationalError as e:
            raise StorageError(f"Error creando el pool de conexiones a la BD: {e}") from e

    def close(self) -> None:
        if self.pool:
            self.pool.closeall()
            self.pool = None

    @contextmanager
    def cursor(self) -> Iterator[RealDictCursor]:
        if not self.pool:
            raise StorageError("El pool de conexiones a la BD no está inicializado.")
        conn = None
        try:
            # 1) Obtenemos una conexión del pool
            conn = self.pool.getconn()
            with conn:  # commit/rollback automático
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    yield cur
        except Error as e:
            raise StorageError(f"Error de base de datos: {e}") from e
        finally:
            # 2) Devolvemos la conexión al pool
            if conn:
                self.pool.putconn(conn)

    def crear_tablas(self) -> None:
        with self.cursor() as cur:
            cur.execute(DDL)


def _estados(estados) -> List[str]:
    return [e.value for e in estados]


# ————————————————————————————————————————————————
# Comprobantes
# ————————————————————————————————————————————————
class PostgresDocumentStore(DocumentStore):

    def __init__(self, db: Database):
        self.db = db

    def save(self, comprobante: Comprobante) -> None:
        data = comprobante.model_dump(mode="json")
        params = {
            "empresa_ruc":  comprobante.empresa_ruc,
            "numero":       comprobante.numero,
            "tipo":         comprobante.tipo.value,
            "fecha":        comprobante.fecha,
            "emisor":       Json(data["emisor"]),
            "receptor":     Json(data["receptor"]),
            "items":        Json(data["items"]),
            "subtotal":     comprobante.subtotal,
            "igv":          comprobante.igv,
            "total":        comprobante.total,
            "moneda":       comprobante.moneda.value,
            "referencia":   Json(data["referencia"]) if comprobante.referencia else None,
            "xml_original": comprobante.xml_original,
            "xml_firmado":  comprobante.xml_firmado,
            "estado":       comprobante.estado.value,
        }
        insert_sql = sql.SQL("""
            INSERT INTO comprobantes (
                empresa_ruc, numero, tipo, fecha, emisor, receptor, items,
                subtotal, igv, total, moneda, referencia,
                xml_original, xml_firmado, estado
            ) VALUES (
                %(empresa_ruc)s, %(numero)s, %(tipo)s, %(fecha)s, %(emisor)s, %(receptor)s, %(items)s,
                %(subtotal)s, %(igv)s, %(total)s, %(moneda)s, %(referencia)s,
                %(xml_original)s, %(xml_firmado)s, %(estado)s
            );
        """)
        with self.db.cursor() as cur:
            cur.execute(insert_sql, params)

    def get_by_tenant_and_number(self, empresa_ruc: str, numero: str) -> Optional[Comprobante]:
        with self.db.cursor() as cur:
            cur.execute(
                "SELECT * FROM comprobantes WHERE empresa_ruc = %s AND numero = %s",
                (empresa_ruc, numero),
            )
            row = cur.fetchone()
        return Comprobante.model_validate(dict(row)) if row else None

    def _estado_actual(self, cur, empresa_ruc: str, numero: str) -> EstadoComprobante:
        cur.execute(
            "SELECT estado FROM comprobantes WHERE empresa_ruc = %s AND numero = %s",
            (empresa_ruc, numero),
        )
        row = cur.fetchone()
        if row is None:
            raise DocumentNotFoundError(f"Comprobante {numero} no encontrado")
        return EstadoComprobante(row["estado"])

    def set_state(self, empresa_ruc: str, numero: str, estado: EstadoComprobante) -> None:
        estado = EstadoComprobante(estado)
        with self.db.cursor() as cur:
            cur.execute(
                """
                UPDATE comprobantes
                   SET estado = %s, fecha_actualizacion = now()
                 WHERE empresa_ruc = %s AND numero = %s AND estado = ANY(%s)
                RETURNING numero
                """,
                (estado.value, empresa_ruc, numero, _estados(estados_previos(estado))),
            )
            if cur.fetchone() is None:
                actual = self._estado_actual(cur, empresa_ruc, numero)
                raise InvalidStateTransitionError(
                    f"El comprobante {numero} no puede pasar de {actual.value} a {estado.value}"
                )

    def set_signed_xml(self, empresa_ruc: str, numero: str, xml_firmado: str) -> None:
        with self.db.cursor() as cur:
            cur.execute(
                """
                UPDATE comprobantes
                   SET xml_firmado = %s, fecha_actualizacion = now()
                 WHERE empresa_ruc = %s AND numero = %s AND xml_firmado IS NULL
                RETURNING numero
                """,
                (xml_firmado, empresa_ruc, numero),
            )
            if cur.fetchone() is None:
                self._estado_actual(cur, empresa_ruc, numero)
                raise AlreadySignedError(f"El comprobante {numero} ya está firmado")

    def attach_receipt(
        self,
        empresa_ruc: str,
        numero: str,
        cdr: CDR,
        estado: EstadoComprobante,
        motivo_rechazo: Optional[str] = None,
    ) -> None:
        estado = EstadoComprobante(estado)
        with self.db.cursor() as cur:
            cur.execute(
                """
                UPDATE comprobantes
                   SET estado = %s, cdr = %s, motivo_rechazo = %s, fecha_actualizacion = now()
                 WHERE empresa_ruc = %s AND numero = %s AND estado = ANY(%s) AND cdr IS NULL
                RETURNING numero
                """,
                (
                    estado.value,
                    Json(cdr.model_dump(mode="json")),
                    motivo_rechazo,
                    empresa_ruc,
                    numero,
                    _estados(estados_previos(estado)),
                ),
            )
            if cur.fetchone() is None:
                actual = self._estado_actual(cur, empresa_ruc, numero)
                raise InvalidStateTransitionError(
                    f"El comprobante {numero} está {actual.value}; no se puede adjuntar el CDR"
                )

    def list_by_state(self, empresa_ruc: str, estado: EstadoComprobante) -> List[Comprobante]:
        with self.db.cursor() as cur:
            cur.execute(
                "SELECT * FROM comprobantes WHERE empresa_ruc = %s AND estado = %s ORDER BY fecha",
                (empresa_ruc, EstadoComprobante(estado).value),
            )
            rows = cur.fetchall()
        return [Comprobante.model_validate(dict(r)) for r in rows]


# ————————————————————————————————————————————————
# Comunicaciones de baja
# ————————————————————————————————————————————————
class PostgresComunicacionStore(ComunicacionStore):

    def __init__(self, db: Database):
        self.db = db

    def save(self, comunicacion: ComunicacionBaja) -> None:
        with self.db.cursor() as cur:
            cur.execute(
                """
                INSERT INTO comunicaciones_baja (
                    empresa_ruc, numero, fecha, fecha_baja, comprobantes, motivo,
                    xml_original, xml_firmado, ticket
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    comunicacion.empresa_ruc,
                    comunicacion.numero,
                    comunicacion.fecha,
                    comunicacion.fecha_baja,
                    Json(comunicacion.comprobantes),
                    comunicacion.motivo,
                    comunicacion.xml_original,
                    comunicacion.xml_firmado,
                    comunicacion.ticket,
                ),
            )

    def _una(self, query: str, params) -> Optional[ComunicacionBaja]:
        with self.db.cursor() as cur:
            cur.execute(query, params)
            row = cur.fetchone()
        return ComunicacionBaja.model_validate(dict(row)) if row else None

    def get_by_tenant_and_number(self, empresa_ruc: str, numero: str) -> Optional[ComunicacionBaja]:
        return self._una(
            "SELECT * FROM comunicaciones_baja WHERE empresa_ruc = %s AND numero = %s", (empresa_ruc, numero)
        )

    def get_by_ticket(self, empresa_ruc: str, ticket: str) -> Optional[ComunicacionBaja]:
        return self._una(
            "SELECT * FROM comunicaciones_baja WHERE empresa_ruc = %s AND ticket = %s", (empresa_ruc, ticket)
        )

    @staticmethod
    def _existe(cur, empresa_ruc: str, numero: str) -> None:
        cur.execute(
            "SELECT 1 FROM comunicaciones_baja WHERE empresa_ruc = %s AND numero = %s",
            (empresa_ruc, numero),
        )
        if cur.fetchone() is None:
            raise DocumentNotFoundError(f"Comunicación de baja {numero} no encontrada")

    def set_signed_xml(self, empresa_ruc: str, numero: str, xml_firmado: str) -> None:
        with self.db.cursor() as cur:
            cur.execute(
                """
                UPDATE comunicaciones_baja
                   SET xml_firmado = %s, fecha_actualizacion = now()
                 WHERE empresa_ruc = %s AND numero = %s AND xml_firmado IS NULL
                RETURNING numero
                """,
                (xml_firmado, empresa_ruc, numero),
            )
            if cur.fetchone() is None:
                self._existe(cur, empresa_ruc, numero)
                raise AlreadySignedError(f"La comunicación de baja {numero} ya está firmada")

    def set_ticket(self, empresa_ruc: str, numero: str, ticket: str) -> None:
        with self.db.cursor() as cur:
            cur.execute(
                """
                UPDATE comunicaciones_baja
                   SET ticket = %s, fecha_actualizacion = now()
                 WHERE empresa_ruc = %s AND numero = %s
                RETURNING numero
                """,
                (ticket, empresa_ruc, numero),
            )
            if cur.fetchone() is None:
                raise DocumentNotFoundError(f"Comunicación de baja {numero} no encontrada")

    def attach_receipt(self, empresa_ruc: str, numero: str, cdr: CDR) -> None:
        with self.db.cursor() as cur:
            cur.execute(
                """
                UPDATE comunicaciones_baja
                   SET cdr = %s, fecha_actualizacion = now()
                 WHERE empresa_ruc = %s AND numero = %s AND cdr IS NULL
                RETURNING numero
                """,
                (Json(cdr.model_dump(mode="json")), empresa_ruc, numero),
            )
            if cur.fetchone() is None:
                self._existe(cur, empresa_ruc, numero)
                raise InvalidStateTransitionError(f"La comunicación de baja {numero} ya tiene CDR")


# ————————————————————————————————————————————————
# Contadores
# ————————————————————————————————————————————————
class PostgresCounterStore(CounterStore):

    def __init__(self, db: Database):
        self.db = db

    def atomic_increment(self, empresa_ruc: str, tipo: str, serie: str) -> int:
        with self.db.cursor() as cur:
            cur.execute(
                """
                INSERT INTO contadores (empresa_ruc, tipo, serie, correlativo)
                VALUES (%s, %s, %s, 1)
                ON CONFLICT (empresa_ruc, tipo, serie)
                DO UPDATE SET correlativo = contadores.correlativo + 1
                RETURNING correlativo
                """,
                (empresa_ruc, tipo, serie),
            )
            return int(cur.fetchone()["correlativo"])


# ————————————————————————————————————————————————
# Certificados
# ————————————————————————————————————————————————
class PostgresCertificateStore(CertificateStore):

    def __init__(self, db: Database):
        self.db = db

    def get_by_tenant(self, empresa_ruc: str) -> Optional[Certificado]:
        with self.db.cursor() as cur:
            cur.execute("SELECT * FROM certificados WHERE empresa_ruc = %s", (empresa_ruc,))
            row = cur.fetchone()
        if row is None:
            return None
        return Certificado(
            ruc=row["empresa_ruc"],
            archivo=bytes(row["archivo"]),
            password=row["password"],
            emitido=row["emitido"],
            vence=row["vence"],
            emisor=row["emisor"],
        )

    def put(self, certificado: Certificado) -> None:
        with self.db.cursor() as cur:
            cur.execute(
                """
                INSERT INTO certificados (empresa_ruc, archivo, password, emitido, vence, emisor)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (empresa_ruc) DO UPDATE SET
                    archivo = EXCLUDED.archivo,
                    password = EXCLUDED.password,
                    emitido = EXCLUDED.emitido,
                    vence = EXCLUDED.vence,
                    emisor = EXCLUDED.emisor
                """,
                (
                    certificado.ruc,
                    psycopg2.Binary(certificado.archivo),
                    certificado.password,
                    certificado.emitido,
                    certificado.vence,
                    certificado.emisor,
                ),
            )


# ————————————————————————————————————————————————
# Empresas
# ————————————————————————————————————————————————
class PostgresEmpresaStore(EmpresaStore):

    def __init__(self, db: Database):
        self.db = db

    def get_by_ruc(self, ruc: str) -> Optional[Empresa]:
        with self.db.cursor() as cur:
            cur.execute("SELECT * FROM empresas WHERE ruc = %s", (ruc,))
            row = cur.fetchone()
        if row is None:
            return None
        return Empresa(
            ruc=row["ruc"],
            razon_social=row["razon_social"],
            nombre_comercial=row["nombre_comercial"],
            direccion=Direccion.model_validate(row["direccion"]),
            credenciales=Credenciales(ruc=row["ruc"], usuario=row["sol_usuario"], password=row["sol_password"]),
            activo=row["activo"],
        )

    def save(self, empresa: Empresa) -> None:
        with self.db.cursor() as cur:
            cur.execute(
                """
                INSERT INTO empresas (ruc, razon_social, nombre_comercial, direccion,
                                      sol_usuario, sol_password, activo)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (ruc) DO UPDATE SET
                    razon_social = EXCLUDED.razon_social,
                    nombre_comercial = EXCLUDED.nombre_comercial,
                    direccion = EXCLUDED.direccion,
                    sol_usuario = EXCLUDED.sol_usuario,
                    sol_password = EXCLUDED.sol_password,
                    activo = EXCLUDED.activo
                """,
                (
                    empresa.ruc,
                    empresa.razon_social,
                    empresa.nombre_comercial,
                    Json(empresa.direccion.model_dump(mode="json")),
                    empresa.credenciales.usuario,
                    empresa.credenciales.password,
                    empresa.activo,
                ),
            )
