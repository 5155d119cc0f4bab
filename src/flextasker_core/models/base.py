# FlexTasker Core - Task Marketplace Data Layer
# Copyright (C) 2025 Luiz Frias <luizf35@gmail.com>
# Form F[x] Labs
#
# This software is dual-licensed under AGPL-3.0 and Commercial License.
# For commercial licensing, contact: luizf35@gmail.com
# See LICENSE file for full terms.

"""Shared pydantic base for metric snapshots and monitoring payloads."""

from beartype import beartype
from pydantic import BaseModel, ConfigDict


@beartype
class BaseModelConfig(BaseModel):
    """Immutable, closed-schema model.

    Snapshots handed out by the monitors are read by API handlers while
    the collectors keep running, so they are frozen and reject unknown
    fields instead of silently dropping them.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        validate_assignment=True,
        validate_default=True,
        str_strip_whitespace=True,
    )
