import re

from confighub.providers.schemas import FileDiff

_HEADER = re.compile(r"^diff --git (.*)$", re.MULTILINE)
_NEW_PATH = re.compile(r"^\+\+\+ b/(.*)$", re.MULTILINE)
_RENAME_TO = re.compile(r"^rename to (.*)$", re.MULTILINE)
_GREEDY = re.compile(r"^a/(.*) b/(.*)$")


def _strip(path: str) -> str:
    return path.rstrip("\r\t")


def _file_path(header: str, body: str) -> str:
    """
    Right-hand path of one file section.

    ``a/X b/X`` with identical halves is unambiguous even when X contains
    `` b/``. Otherwise the ``+++ b/`` line, then ``rename to``, name the file.
    """
    header = _strip(header)
    half = len(header) // 2
    if (
        header.startswith("a/")
        and header[half:half + 3] == " b/"
        and header[2:half] == header[half + 3:]
    ):
        return header[half + 3:]

    for pattern in (_NEW_PATH, _RENAME_TO):
        match = pattern.search(body)
        if match:
            return _strip(match.group(1))

    match = _GREEDY.match(header)
    return match.group(2) if match else header


def split_unified_diff(text: str) -> list[FileDiff]:
    """
    Split a multi-file unified diff into one entry per file.

    Each entry runs from its ``diff --git`` header up to (not including) the
    next header, so every line belongs to exactly one file. The right-hand
    ``b/`` path names the file. Text before the first header is dropped.
    """
    if not text or not text.strip():
        return []

    headers = list(_HEADER.finditer(text))
    files = []
    for i, match in enumerate(headers):
        end = headers[i + 1].start() if i + 1 < len(headers) else len(text)
        section = text[match.start():end]
        files.append(FileDiff(path=_file_path(match.group(1), section), diff=section))
    return files
