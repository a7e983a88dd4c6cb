import json
import os
from pathlib import Path
from typing import Any, Dict, List

DEFAULT_DATA_DIR = Path(__file__).parent.parent / "data"


def _collection_path(data_dir: Path, filename: str) -> Path:
    return Path(data_dir) / f"{filename}.json"


# Load a collection from its JSON file, creating an empty one on first use
def load_data(filename: str, data_dir: Path = DEFAULT_DATA_DIR) -> List[Dict[str, Any]]:
    file_path = _collection_path(data_dir, filename)
    file_path.parent.mkdir(parents=True, exist_ok=True)

    if not file_path.exists():
        with open(file_path, 'w') as f:
            json.dump([], f)

    with open(file_path, 'r') as f:
        return json.load(f)


# Save a collection to its JSON file. The file is only replaced after a
# complete dump to the temp file.
def save_data(filename: str, data: List[Dict[str, Any]], data_dir: Path = DEFAULT_DATA_DIR) -> None:
    file_path = _collection_path(data_dir, filename)
    file_path.parent.mkdir(parents=True, exist_ok=True)

    tmp_path = file_path.with_suffix(".json.tmp")
    with open(tmp_path, 'w') as f:
        json.dump(data, f, indent=4)
    os.replace(tmp_path, file_path)
