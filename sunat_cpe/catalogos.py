"""
Catálogos oficiales de SUNAT usados para validar y para armar el XML.
Son tablas estáticas: solo se consultan, nunca se modifican en ejecución.
"""
from typing import Dict, Mapping, NamedTuple, Optional

CATALOGOS: Mapping[str, Mapping[str, str]] = {
    # 01: Tipo de documento
    "01": {
        "01": "Factura",
        "03": "Boleta de venta",
        "07": "Nota de crédito",
        "08": "Nota de débito",
    },
    # 05: Tipos de tributos
    "05": {
        "1000": "IGV Impuesto General a las Ventas",
        "2000": "ISC Impuesto Selectivo al Consumo",
        "9995": "Exportación",
        "9996": "Gratuito",
        "9997": "Exonerado",
        "9998": "Inafecto",
        "9999": "Otros tributos",
    },
    # 06: Tipo de documento de identidad
    "06": {
        "0": "Doc. trib. no dom. sin RUC",
        "1": "DNI",
        "4": "Carnet de extranjería",
        "6": "RUC",
        "7": "Pasaporte",
        "A": "Cédula diplomática de identidad",
    },
    # 07: Tipo de afectación del IGV
    "07": {
        "10": "Gravado - Operación onerosa",
        "11": "Gravado - Retiro por premio",
        "12": "Gravado - Retiro por donación",
        "13": "Gravado - Retiro",
        "14": "Gravado - Retiro por publicidad",
        "15": "Gravado - Bonificaciones",
        "16": "Gravado - Retiro por entrega a trabajadores",
        "17": "Gravado - IVAP",
        "20": "Exonerado - Operación onerosa",
        "30": "Inafecto - Operación onerosa",
        "31": "Inafecto - Retiro por bonificación",
        "32": "Inafecto - Retiro",
        "33": "Inafecto - Retiro por muestras médicas",
        "34": "Inafecto - Retiro por convenio colectivo",
        "35": "Inafecto - Retiro por premio",
        "36": "Inafecto - Retiro por publicidad",
        "40": "Exportación de bienes o servicios",
    },
    # 09: Tipo de nota de crédito
    "09": {
        "01": "Anulación de la operación",
        "02": "Anulación por error en el RUC",
        "03": "Corrección por error en la descripción",
        "04": "Descuento global",
        "05": "Descuento por ítem",
        "06": "Devolución total",
        "07": "Devolución por ítem",
        "08": "Bonificación",
        "09": "Disminución en el valor",
        "10": "Otros conceptos",
    },
    # 10: Tipo de nota de débito
    "10": {
        "01": "Intereses por mora",
        "02": "Aumento en el valor",
        "03": "Penalidades / otros conceptos",
    },
}

MONEDAS = ("PEN", "USD")

TASA_IGV = "18.00"


class Tributo(NamedTuple):
    codigo: str   # catálogo 05
    nombre: str
    tipo: str     # código UN/ECE 5153
    porcentaje: str


_IGV = Tributo("1000", "IGV", "VAT", TASA_IGV)
_EXO = Tributo("9997", "EXO", "VAT", "0.00")
_INA = Tributo("9998", "INA", "FRE", "0.00")
_EXP = Tributo("9995", "EXP", "FRE", "0.00")


def is_valid_code(catalog_id: str, code: Optional[str]) -> bool:
    if not code:
        return False
    return code in CATALOGOS.get(catalog_id, {})


def descripcion(catalog_id: str, code: str) -> Optional[str]:
    return CATALOGOS.get(catalog_id, {}).get(code)


def tributo_por_afectacion(afectacion: str) -> Tributo:
    """Tributo (catálogo 05) que corresponde a un código de afectación (catálogo 07)."""
    if afectacion.startswith("1"):
        return _IGV
    if afectacion == "20":
        return _EXO
    if afectacion.startswith("3"):
        return _INA
    if afectacion == "40":
        return _EXP
    raise KeyError(afectacion)


TRIBUTOS: Dict[str, Tributo] = {t.codigo: t for t in (_IGV, _EXO, _INA, _EXP)}
