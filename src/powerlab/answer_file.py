"""Render SQL Server unattended-install answer files from a template."""

import logging
import os
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Union

logger = logging.getLogger(__name__)

SERVICE_ACCOUNT_KEY = "SQLSVCACCOUNT"
SERVICE_PASSWORD_KEY = "SQLSVCPASSWORD"
SYSADMIN_ACCOUNTS_KEY = "SQLSYSADMINACCOUNTS"


@dataclass
class AnswerFileValues:
    """Values substituted into the empty placeholders of the template."""

    service_account: str
    service_password: str
    sysadmin_accounts: str


def substitute(text: str, values: AnswerFileValues) -> str:
    """
    Fill the three empty-quoted placeholders of a ConfigurationFile.ini.

    Only the exact ``KEY=""`` literals are replaced; any other spelling of
    the same key is left untouched.
    """
    replacements = (
        (SERVICE_ACCOUNT_KEY, values.service_account),
        (SERVICE_PASSWORD_KEY, values.service_password),
        (SYSADMIN_ACCOUNTS_KEY, values.sysadmin_accounts),
    )
    for key, value in replacements:
        text = text.replace(f'{key}=""', f'{key}="{value}"')
    return text


def render_answer_file(template_path: Union[str, Path], values: AnswerFileValues) -> str:
    """Read the template as raw text and return it with placeholders filled."""
    # newline="" keeps the template's line endings byte-for-byte
    with open(template_path, encoding="utf-8", newline="") as f:
        template = f.read()
    return substitute(template, values)


@contextmanager
def temporary_answer_file(text: str, suffix: str = ".ini") -> Iterator[str]:
    """Write ``text`` to a temporary file and delete it when the block exits."""
    fd, path = tempfile.mkstemp(prefix="powerlab-", suffix=suffix)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(text)
        yield path
    finally:
        try:
            os.remove(path)
        except FileNotFoundError:
            logger.debug(f"Temporary answer file {path} was already removed")
