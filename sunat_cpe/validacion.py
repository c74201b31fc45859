import re
from decimal import Decimal
from typing import List, Optional, Sequence

from .catalogos import MONEDAS, is_valid_code
from .errors import ValidationError
from .models import Item, Receptor, Referencia, TipoComprobante

_RUC = re.compile(r"^\d{11}$")
_DNI = re.compile(r"^\d{8}$")


def _max_dos_decimales(valor: Decimal) -> bool:
    return valor == valor.quantize(Decimal("0.01"))


class DataValidator:
    """
    Validaciones previas a la numeración. Cada método devuelve la lista de
    errores encontrados; `validar_comprobante` los junta y lanza uno solo.
    """

    def validar_ruc(self, ruc: Optional[str]) -> List[str]:
        if not ruc:
            return ["El RUC es obligatorio"]
        if not _RUC.match(ruc):
            return ["El RUC debe tener exactamente 11 dígitos numéricos"]
        return []

    def validar_dni(self, dni: Optional[str]) -> List[str]:
        if not dni:
            return ["El DNI es obligatorio"]
        if not _DNI.match(dni):
            return ["El DNI debe tener exactamente 8 dígitos numéricos"]
        return []

    def validar_moneda(self, moneda: Optional[str]) -> List[str]:
        if not moneda:
            return ["La moneda es obligatoria"]
        if moneda not in MONEDAS:
            return [f"La moneda debe ser {' o '.join(MONEDAS)}"]
        return []

    def validar_catalogo(self, codigo: Optional[str], catalogo: str) -> List[str]:
        if not codigo:
            return [f"El código del catálogo {catalogo} es obligatorio"]
        if not is_valid_code(catalogo, codigo):
            return [f"El código {codigo} no es válido para el catálogo {catalogo}"]
        return []

    def validar_receptor(self, tipo: TipoComprobante, receptor: Optional[Receptor]) -> List[str]:
        if receptor is None:
            return ["El receptor es obligatorio"]

        errores = self.validar_catalogo(receptor.tipo_documento, "06")
        if receptor.tipo_documento == "1":
            errores += self.validar_dni(receptor.numero_documento)
        elif receptor.tipo_documento == "6":
            errores += self.validar_ruc(receptor.numero_documento)

        # La factura solo se emite a contribuyentes con RUC
        if tipo == TipoComprobante.FACTURA and receptor.tipo_documento != "6":
            errores.append("El receptor de una factura debe identificarse con RUC")

        if not receptor.nombre or not receptor.nombre.strip():
            errores.append("El nombre del receptor es obligatorio")
        return errores

    def validar_items(self, items: Optional[Sequence[Item]]) -> List[str]:
        if not items:
            return ["Debe incluir al menos un item"]

        errores: List[str] = []
        for i, item in enumerate(items, start=1):
            if item.cantidad <= 0:
                errores.append(f"Item {i}: La cantidad debe ser mayor a cero")
            if item.precio_unitario <= 0:
                errores.append(f"Item {i}: El precio unitario debe ser mayor a cero")
            if not _max_dos_decimales(item.precio_unitario):
                errores.append(f"Item {i}: El precio unitario debe tener máximo 2 decimales")
            for e in self.validar_catalogo(item.afectacion_igv, "07"):
                errores.append(f"Item {i}: {e}")
            if item.igv < 0:
                errores.append(f"Item {i}: El IGV no puede ser negativo")
            if item.total <= 0:
                errores.append(f"Item {i}: El total debe ser mayor a cero")
        return errores

    def validar_referencia(self, tipo: TipoComprobante, referencia: Optional[Referencia]) -> List[str]:
        if tipo not in (TipoComprobante.NOTA_CREDITO, TipoComprobante.NOTA_DEBITO):
            return []
        if referencia is None:
            return ["Las notas de crédito y débito deben referenciar un comprobante"]
        catalogo = "09" if tipo == TipoComprobante.NOTA_CREDITO else "10"
        errores = self.validar_catalogo(referencia.codigo_motivo, catalogo)
        if not referencia.descripcion or not referencia.descripcion.strip():
            errores.append("El motivo de la nota es obligatorio")
        return errores

    def validar_comprobante(
        self,
        tipo: TipoComprobante,
        receptor: Optional[Receptor],
        items: Optional[Sequence[Item]],
        moneda: Optional[str],
        referencia: Optional[Referencia] = None,
    ) -> None:
        errores = self.validar_catalogo(getattr(tipo, "value", tipo), "01")
        errores += self.validar_receptor(tipo, receptor)
        errores += self.validar_items(items)
        errores += self.validar_moneda(getattr(moneda, "value", moneda))
        errores += self.validar_referencia(tipo, referencia)

        if errores:
            raise ValidationError(errores)
