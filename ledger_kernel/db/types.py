"""
Module: ledger_kernel.db.types
Responsibility: Annotated column type aliases and the EnumString column type.
Architecture position: Kernel > DB.  May be imported by models/.  MUST NOT
    import from models/, services/, selectors/ or domain/.

Invariants enforced:
    - Money is stored as an integer count of minor units (MinorUnits).
      No floats and no Numeric rounding anywhere in the ledger tables.
    - Enum-valued columns are stored as their string value and always
      load back as the Enum member.
"""

from enum import Enum
from typing import Annotated

from sqlalchemy import BigInteger, String
from sqlalchemy.types import TypeDecorator

# Monetary amount in minor units (cents)
MinorUnits = Annotated[int, BigInteger]

# Short identifier strings
ShortCode = Annotated[str, String(50)]

# Free-text descriptions and reasons
LongText = Annotated[str, String(4000)]


class EnumString(TypeDecorator):
    """
    Store a str-valued Enum as VARCHAR and load it back as the member.

    Guarantees:
        - process_bind_param accepts a member or its raw value.
        - process_result_value always returns a member of enum_class.
    """

    impl = String
    cache_ok = True

    def __init__(self, enum_class: type[Enum], length: int = 20):
        super().__init__(length)
        self.enum_class = enum_class

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return self.enum_class(value).value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return self.enum_class(value)
