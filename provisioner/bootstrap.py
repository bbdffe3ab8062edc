"""Bootstrap secret contract: the cloud-config payload handed to new machines."""

from __future__ import annotations

from typing import Mapping, Union

from provisioner.constants import CLOUD_INIT_FORMAT
from provisioner.exceptions import ManagerError, UnsupportedFormatError

SecretValue = Union[bytes, str]


def _as_text(value: SecretValue, secret_name: str, key: str) -> str:
    if isinstance(value, bytes):
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise UnsupportedFormatError(
                f"bootstrap data secret '{secret_name}' key '{key}' is not valid UTF-8 text"
            ) from exc
    return value


def parse_bootstrap_secret(data: Mapping[str, SecretValue], secret_name: str) -> str:
    """Return the cloud-config text stored in a bootstrap secret.

    The secret must carry a ``value`` key. An optional ``format`` key must be
    ``cloud-config``; anything else, including bytes that are not UTF-8, is
    rejected with ``UnsupportedFormatError``. An empty string is returned
    as-is so callers can treat it as "not ready".
    """
    if "value" not in data:
        raise ManagerError(
            f"error retrieving bootstrap data: secret '{secret_name}' is missing the 'value' key"
        )
    fmt = _as_text(data["format"], secret_name, "format") if "format" in data else CLOUD_INIT_FORMAT
    if fmt != CLOUD_INIT_FORMAT:
        raise UnsupportedFormatError(f"unsupported bootstrap data format: {fmt}")
    return _as_text(data["value"], secret_name, "value")
