import json
from pathlib import Path

FILES_DIR = Path(__file__).parent / "files"


def sample_file(name: str) -> str:
    return str(FILES_DIR / name)


def write_jsonl(path: Path, records: list) -> Path:
    """
    Write each item of `records` as one line - dicts as JSON, strings as-is.
    """
    with open(path, "w", encoding="utf-8") as outfile:
        for rec in records:
            outfile.write(rec if isinstance(rec, str) else json.dumps(rec))
            outfile.write("\n")
    return path


def contains_list(full_list, sub_list) -> bool:
    sub_len = len(sub_list)
    for offset in range(len(full_list) - len(sub_list) + 1):
        if full_list[offset:offset + sub_len] == sub_list:
            return True
    return False
