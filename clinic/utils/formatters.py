"""
Utilidades de formateo para reportes del ledger.
Montos enteros con separador de miles y fechas DD/MM/YYYY.
"""
from datetime import date, datetime
from typing import Union


def group_thousands(value: int) -> str:
    """
    Agrupa los miles con punto (.)

    Examples:
        group_thousands(1500) -> "1.500"
        group_thousands(-100550) -> "-100.550"
    """
    sign = "-" if value < 0 else ""
    reversed_int = str(abs(value))[::-1]
    groups = [reversed_int[i:i+3] for i in range(0, len(reversed_int), 3)]
    return f"{sign}{'.'.join(groups)[::-1]}"


def money(value: Union[int, str, None], symbol: str = "$") -> str:
    """
    Formatea un monto entero (unidad mínima de la moneda).

    Un saldo negativo es crédito a favor del paciente y se muestra con signo.

    Examples:
        money(1500) -> "$ 1.500"
        money(-70) -> "-$ 70"
        money(None) -> "-"
    """
    if value is None or value == "":
        return "-"

    try:
        amount = int(value)
    except (ValueError, TypeError):
        return "-"

    if amount < 0:
        return f"-{symbol} {group_thousands(-amount)}"
    return f"{symbol} {group_thousands(amount)}"


def date_ar(value: Union[date, datetime, str, None]) -> str:
    """
    Formatea una fecha en formato DD/MM/YYYY

    Examples:
        date_ar(date(2024, 1, 12)) -> "12/01/2024"
        date_ar("2024-01-12") -> "12/01/2024"
    """
    if value is None:
        return "-"

    if isinstance(value, str):
        try:
            value = date.fromisoformat(value)
        except ValueError:
            return "-"

    if isinstance(value, datetime):
        value = value.date()

    if not isinstance(value, date):
        return "-"

    return value.strftime("%d/%m/%Y")
