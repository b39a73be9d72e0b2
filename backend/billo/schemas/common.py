from decimal import Decimal
from typing import Annotated

from pydantic import PlainSerializer, StringConstraints

# Amounts travel as strings with exactly two decimals, e.g. "12.99"
MoneyStr = Annotated[str, StringConstraints(strip_whitespace=True, pattern=r"^\d+\.\d{2}$")]

# Decimal columns rendered as "12.99" in responses
Money = Annotated[Decimal, PlainSerializer(lambda v: f"{v:.2f}", return_type=str)]
