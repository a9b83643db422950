"""Job messages exchanged through the jobs queue.

One queue message carries exactly one job as a camelCase JSON object::

    {"type": "ProcessVideo", "messageId": "...", "libraryId": "...", "fileId": "...", "convertToMp4": true}

``messageId`` is minted when a message is built, so two requests for the same work stay
distinct payloads and keep separate delivery counts in the queue. Envelopes
without one are still accepted.

Messages are frozen once built; handlers that need to continue work publish
a new message instead of mutating the one they received.
"""

from __future__ import annotations

from typing import Annotated, Literal, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class _JobMessage(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True, extra="ignore")

    message_id: UUID = Field(default_factory=uuid4)
    library_id: UUID

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class ProcessPictureMessage(_JobMessage):
    type: Literal["ProcessPicture"] = "ProcessPicture"
    file_id: UUID


class ProcessVideoMessage(_JobMessage):
    type: Literal["ProcessVideo"] = "ProcessVideo"
    file_id: UUID
    convert_to_mp4: bool = False


class RecalculateFolderMessage(_JobMessage):
    type: Literal["RecalculateFolder"] = "RecalculateFolder"
    folder_id: UUID


JobMessage = Annotated[
    Union[ProcessPictureMessage, ProcessVideoMessage, RecalculateFolderMessage],
    Field(discriminator="type"),
]

_job_message_adapter: TypeAdapter[JobMessage] = TypeAdapter(JobMessage)


def parse_message(raw: str | bytes) -> JobMessage:
    """Parse a queue payload, raising ``pydantic.ValidationError`` when malformed."""
    return _job_message_adapter.validate_json(raw)
