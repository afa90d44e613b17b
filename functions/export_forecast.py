"""
Writes forecast and performance DataFrames to an Excel workbook and applies
conditional formatting and tables.
"""

import os
import re

import pandas as pd
from openpyxl import load_workbook
from openpyxl.formatting.rule import CellIsRule, ColorScaleRule
from openpyxl.styles import PatternFill
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.table import Table, TableStyleInfo

import config


def _table_name(
    title: str
) -> str:

    return re.sub(r"[^A-Za-z0-9_]", "", title) + "Table"


def export_results(sheets, output_excel_file = None):
    """
    Write each DataFrame of ``sheets`` to its own sheet (replacing a sheet of
    the same name in an existing workbook), then format it.

    'MAPE' columns get a green-to-red colour scale; 'Unavailable' counts above
    zero are filled red. Every sheet is turned into an Excel table.
    """

    if not output_excel_file:
        output_excel_file = config.FORECAST_FILE

    output_excel_file = str(output_excel_file)

    os.makedirs(os.path.dirname(output_excel_file) or ".", exist_ok = True)

    exists = os.path.exists(output_excel_file)

    with pd.ExcelWriter(
        output_excel_file,
        mode = 'a' if exists else 'w',
        engine = 'openpyxl',
        **({'if_sheet_exists': 'replace'} if exists else {})
    ) as writer:

        for name, df in sheets.items():
            df.to_excel(writer, sheet_name = name, index = True, merge_cells = False)

    wb = load_workbook(output_excel_file)

    red_fill = PatternFill(start_color = 'FFC7CE', end_color = 'FFC7CE', fill_type = 'solid')

    for sheet_name in sheets:

        ws = wb[sheet_name]

        for cell in ws[1]:
            if not isinstance(cell.value, str):
                cell.value = "" if cell.value is None else str(cell.value)

        max_row = ws.max_row
        max_col = ws.max_column

        if max_row < 2:
            continue

        header_map = {
            cell.value: get_column_letter(cell.column)
            for cell in ws[1]
            if cell.value
        }

        mape_col = header_map.get('mape') or header_map.get('MAPE')
        unavailable_col = header_map.get('n_excluded') or header_map.get('Unavailable')

        if mape_col:

            ws.conditional_formatting.add(
                f"{mape_col}2:{mape_col}{max_row}",
                ColorScaleRule(
                    start_type = 'min', start_color = 'C6EFCE',
                    mid_type = 'percentile', mid_value = 50, mid_color = 'FFEB9B',
                    end_type = 'max', end_color = 'FFC7CE'
                )
            )

        if unavailable_col:

            ws.conditional_formatting.add(
                f"{unavailable_col}2:{unavailable_col}{max_row}",
                CellIsRule(operator = 'greaterThan', formula = ['0'], fill = red_fill)
            )

        table = Table(
            displayName = _table_name(ws.title),
            ref = f"A1:{get_column_letter(max_col)}{max_row}"
        )

        table.tableStyleInfo = TableStyleInfo(
            name = "TableStyleMedium9",
            showFirstColumn = False,
            showLastColumn = False,
            showRowStripes = True,
            showColumnStripes = False
        )

        ws.add_table(table)

    wb.save(output_excel_file)

    wb.close()
