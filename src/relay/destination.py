import re

from pydantic import BaseModel, ConfigDict, field_validator

from . import exceptions

SAFE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9\-/:_]+$")


def assert_safe_destination_name(name: str) -> None:
    """
    Raise InvalidDestinationException if the name contains "problematic" characters.
    """
    if not isinstance(name, str) or not SAFE_NAME_PATTERN.match(name):
        raise exceptions.InvalidDestinationException(
            f"Name [{name}] contains problematic characters. Allowed are alphanumeric strings containing -/:_"
        )


class Destination(BaseModel):
    """
    A named publish target: either a queue or an exchange.
    """

    name: str
    model_config = ConfigDict(frozen=True)

    def __init__(self, name: str, **data):
        super().__init__(name=name, **data)

    @field_validator("name", mode="before")
    @classmethod
    def _validate_name(cls, v):
        assert_safe_destination_name(v)
        return v

    def __str__(self):
        return self.name


class Queue(Destination):
    pass


class Exchange(Destination):
    pass
