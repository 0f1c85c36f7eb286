"""File adapters that read catalog workbooks into cell grids."""

from .excel_adapter import ExcelAdapter, SheetGrid, coerce_cell

__all__ = ["ExcelAdapter", "SheetGrid", "coerce_cell"]
