"""
Data service for loading registration items
"""

import json
from pathlib import Path
from typing import List, Union

import pandas as pd

from ..exceptions import InvalidItemError
from ..models.item import Item

LABEL_COLUMN = "label"
ID_COLUMN = "item_id"


class DataService:
    """Service for handling item data operations"""

    def __init__(self):
        self.items: List[Item] = []

    def get_items(self) -> List[Item]:
        """Get all loaded items"""
        return self.items

    def clear_items(self):
        """Clear all items"""
        self.items.clear()

    def load_items(self, file_path: Union[str, Path]) -> List[Item]:
        """
        Load items from a CSV or JSON file

        Args:
            file_path: Path to a .csv file (a 'label' column plus attribute
                columns) or a .json file (a list of {label, attributes} objects)

        Returns:
            The loaded items, in file order

        Raises:
            FileNotFoundError: If file doesn't exist
            InvalidItemError: If the file content violates the item contract
        """
        path = Path(file_path)
        if not path.exists():
            raise FileNotFoundError(f"File not found: {file_path}")

        if path.suffix.lower() == ".json":
            items = self._load_json(path)
        else:
            items = self._load_csv(path)

        self.items.extend(items)
        return items

    def _load_csv(self, path: Path) -> List[Item]:
        frame = pd.read_csv(path, dtype=str, keep_default_na=False, encoding='utf-8')
        if LABEL_COLUMN not in frame.columns:
            raise InvalidItemError(f"CSV file {path} has no '{LABEL_COLUMN}' column")

        items = []
        for line, row in enumerate(frame.to_dict(orient='records'), start=2):
            if not any(value.strip() for value in row.values()):
                continue
            label = row.pop(LABEL_COLUMN).strip()
            item_id = row.pop(ID_COLUMN, "").strip() or None
            if not label:
                raise InvalidItemError(f"CSV file {path} line {line} has a blank '{LABEL_COLUMN}'")
            attributes = {str(k).strip(): v.strip() for k, v in row.items() if v and v.strip()}
            items.append(Item(label, attributes, item_id))
        return items

    def _load_json(self, path: Path) -> List[Item]:
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise InvalidItemError(f"JSON file {path} is invalid: {e}")

        if not isinstance(data, list):
            raise InvalidItemError(f"JSON file {path} must hold a list of items")

        items = []
        for position, entry in enumerate(data):
            if isinstance(entry, str):
                items.append(Item(entry))
            elif isinstance(entry, dict):
                items.append(Item(entry.get("label", ""), entry.get("attributes") or {},
                                  entry.get("itemId") or entry.get("item_id")))
            else:
                raise InvalidItemError(f"entry {position} is neither an object nor a string")
        return items

    def get_statistics(self) -> dict:
        """Get item statistics"""
        return {
            'total': len(self.items),
            'with_attributes': len([i for i in self.items if i.attributes]),
        }
