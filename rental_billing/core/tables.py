from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .aws import ddb
from .settings import S

@dataclass(frozen=True)
class Tables:
    billing: Any

T = Tables(
    billing=ddb.Table(S.billing_table_name),
)
