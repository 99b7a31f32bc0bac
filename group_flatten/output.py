"""Pass-through output: one JSON object per applied membership change."""

import sys
import json
from typing import Optional, TextIO

from group_flatten.models import ChangeRecord


class JsonLinesRecordWriter:
    """Writes ChangeRecords to a stream as JSON lines, stdout by default."""

    def __init__(self, stream: Optional[TextIO] = None):
        self.stream = stream if stream is not None else sys.stdout
        self.count = 0

    def __call__(self, record: ChangeRecord) -> None:
        self.stream.write(json.dumps(record.to_dict()) + '\n')
        self.stream.flush()
        self.count += 1
