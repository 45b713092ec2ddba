"""Validated options for loading archives."""

from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.functional_validators import AfterValidator
from typing_extensions import Annotated

import re


# Device strings are "<type>" or "<type>:<index>"; the set of types is open.
_DEVICE_PATTERN = re.compile(r"[a-z_]+(:\d+)?")


def _validate_device(value: str) -> str:
    """A validator checking device strings such as ``cuda:0``"""

    if not _DEVICE_PATTERN.fullmatch(value):
        raise ValueError(
            f"Invalid device '{value}'. Expected a device type such as 'cpu' or "
            "'cuda', optionally followed by ':<index>'."
        )
    return value


def _validate_namespace(value: str) -> str:
    atoms = value.split(".")
    if not all(atom.isidentifier() for atom in atoms):
        raise ValueError(f"Reserved namespace must be a dotted identifier, got '{value}'.")
    return value


Device = Annotated[str, AfterValidator(_validate_device)]
Namespace = Annotated[str, AfterValidator(_validate_namespace)]


class LoadSettings(BaseModel):
    """Options shared by the load entry points and the CLI."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    # Target device handed to the storage factory; None leaves placement to it.
    device: Optional[Device] = None
    # Names under this namespace are resolved as classes of the archive.
    reserved_namespace: Namespace = "__torch__"
    # Name of the archive whose ``<name>.pkl`` record holds the object graph.
    archive_name: str = "data"
    check_version: bool = True
