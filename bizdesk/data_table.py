"""
Generic tabular view over API records.

Filtering, single-column sorting, column visibility, row selection and
pagination over a list of records, plus CSV export of what is on screen.
"""

import csv
import io
import json
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set, Union

from .exceptions import ValidationException
from .logging_config import get_logger

logger = get_logger(__name__)

Accessor = Union[str, Callable[[Any], Any]]


@dataclass
class Column:
    """
    A table column.

    ``accessor`` is a record key (or attribute name) or a callable taking the
    record; it defaults to ``id``.
    """

    id: str
    header: Optional[str] = None
    accessor: Optional[Accessor] = None
    can_hide: bool = True
    sortable: bool = True

    @property
    def title(self) -> str:
        return self.header if self.header is not None else self.id

    def get_value(self, row: Any) -> Any:
        accessor = self.accessor if self.accessor is not None else self.id
        if callable(accessor):
            return accessor(row)
        if isinstance(row, Mapping):
            return row.get(accessor)
        return getattr(row, accessor, None)


def format_csv_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (Mapping, list, tuple)):
        return json.dumps(value, default=str)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class DataTable:
    """
    Table state for a list of records.

    Pages are numbered from 1. ``current_page`` always lies within
    ``[1, page_count]``, also after the data shrinks.
    """

    def __init__(
        self,
        columns: Sequence[Column],
        data: Sequence[Any],
        page_size: int = 10,
        filter_column: Optional[str] = None,
        export_file_name: str = "data",
        on_export: Optional[Callable[[List[Any]], None]] = None,
    ) -> None:
        if page_size < 1:
            raise ValidationException("page_size", page_size, "must be at least 1")

        self.columns = list(columns)
        self._by_id: Dict[str, Column] = {c.id: c for c in self.columns}
        if filter_column is not None and filter_column not in self._by_id:
            raise ValidationException("filter_column", filter_column, "unknown column")

        self.data = list(data)
        self.page_size = page_size
        self.filter_column = filter_column
        self.export_file_name = export_file_name
        self.on_export = on_export

        self.filter_value = ""
        self.sort_column: Optional[str] = None
        self.sort_descending = False
        self.hidden_columns: Set[str] = set()
        self.selected: Set[int] = set()
        self._page = 1

    def get_column(self, column_id: str) -> Column:
        try:
            return self._by_id[column_id]
        except KeyError:
            raise ValidationException("column", column_id, "unknown column") from None

    # Data

    def set_data(self, data: Sequence[Any]) -> None:
        self.data = list(data)
        self.selected = {i for i in self.selected if i < len(self.data)}

    # Filtering

    def set_filter(self, value: Optional[str]) -> None:
        """Case-insensitive substring filter on ``filter_column``; resets to page 1."""
        self.filter_value = value or ""
        self._page = 1

    def _matches(self, row: Any) -> bool:
        if not self.filter_column or not self.filter_value:
            return True
        cell = self._by_id[self.filter_column].get_value(row)
        return self.filter_value.lower() in format_csv_cell(cell).lower()

    # Sorting

    def sort_by(self, column_id: Optional[str], descending: bool = False) -> None:
        if column_id is not None and not self.get_column(column_id).sortable:
            raise ValidationException("sort_column", column_id, "column is not sortable")
        self.sort_column = column_id
        self.sort_descending = descending

    def toggle_sort(self, column_id: str) -> None:
        """Cycle a column through ascending, descending and unsorted."""
        if self.sort_column != column_id:
            self.sort_by(column_id)
        elif not self.sort_descending:
            self.sort_by(column_id, descending=True)
        else:
            self.sort_by(None)

    def _sorted(self, indexed: List[tuple]) -> List[tuple]:
        if self.sort_column is None:
            return indexed

        column = self._by_id[self.sort_column]
        present = [item for item in indexed if column.get_value(item[1]) is not None]
        missing = [item for item in indexed if column.get_value(item[1]) is None]

        try:
            present.sort(key=lambda item: column.get_value(item[1]), reverse=self.sort_descending)
        except TypeError:
            present.sort(key=lambda item: str(column.get_value(item[1])), reverse=self.sort_descending)

        return present + missing

    # Visibility

    def set_column_visibility(self, column_id: str, visible: bool) -> None:
        column = self.get_column(column_id)
        if visible:
            self.hidden_columns.discard(column_id)
        elif not column.can_hide:
            raise ValidationException("column", column_id, "column cannot be hidden")
        else:
            self.hidden_columns.add(column_id)

    @property
    def visible_columns(self) -> List[Column]:
        return [c for c in self.columns if c.id not in self.hidden_columns]

    @property
    def hideable_columns(self) -> List[Column]:
        return [c for c in self.columns if c.can_hide]

    # Rows

    def _filtered_indexed(self) -> List[tuple]:
        indexed = [(i, row) for i, row in enumerate(self.data) if self._matches(row)]
        return self._sorted(indexed)

    @property
    def filtered_rows(self) -> List[Any]:
        return [row for _, row in self._filtered_indexed()]

    @property
    def page_count(self) -> int:
        return max(1, math.ceil(len(self._filtered_indexed()) / self.page_size))

    @property
    def current_page(self) -> int:
        return min(max(1, self._page), self.page_count)

    def set_page(self, page: int) -> int:
        self._page = min(max(1, page), self.page_count)
        return self._page

    def set_page_size(self, page_size: int) -> None:
        if page_size < 1:
            raise ValidationException("page_size", page_size, "must be at least 1")
        self.page_size = page_size
        self.set_page(self._page)

    @property
    def can_previous_page(self) -> bool:
        return self.current_page > 1

    @property
    def can_next_page(self) -> bool:
        return self.current_page < self.page_count

    def next_page(self) -> int:
        return self.set_page(self.current_page + 1)

    def previous_page(self) -> int:
        return self.set_page(self.current_page - 1)

    def _page_indexed(self) -> List[tuple]:
        start = (self.current_page - 1) * self.page_size
        return self._filtered_indexed()[start:start + self.page_size]

    def rows(self) -> List[Any]:
        """Records on the current page, filtered and sorted."""
        return [row for _, row in self._page_indexed()]

    # Selection

    def select_row(self, index: int, selected: bool = True) -> None:
        """Select a record by its position in ``data``."""
        if not 0 <= index < len(self.data):
            raise ValidationException("row", index, "row index out of range")
        if selected:
            self.selected.add(index)
        else:
            self.selected.discard(index)

    def select_page(self, selected: bool = True) -> None:
        for index, _ in self._page_indexed():
            self.select_row(index, selected)

    def clear_selection(self) -> None:
        self.selected.clear()

    @property
    def selected_rows(self) -> List[Any]:
        return [row for i, row in self._filtered_indexed() if i in self.selected]

    def selection_summary(self) -> str:
        return f"{len(self.selected_rows)} of {len(self._filtered_indexed())} row(s) selected."

    # Export

    def to_csv(self) -> str:
        """
        CSV of the current page.

        The header line holds the visible column ids; each record on the
        current page follows as one line.
        """
        columns = self.visible_columns
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow([c.id for c in columns])
        for row in self.rows():
            writer.writerow([format_csv_cell(c.get_value(row)) for c in columns])
        return buffer.getvalue().rstrip("\n")

    def export(self, directory: Union[str, Path] = ".") -> Optional[Path]:
        """
        Write ``<export_file_name>.csv`` into ``directory``.

        With an ``on_export`` callback the full data is handed to it instead
        and nothing is written.
        """
        if self.on_export is not None:
            self.on_export(list(self.data))
            return None

        path = Path(directory) / f"{self.export_file_name}.csv"
        path.write_text(self.to_csv(), encoding="utf-8")
        logger.info(
            "Exported table",
            extra={"extra_fields": {"path": str(path), "rows": len(self.rows())}},
        )
        return path
