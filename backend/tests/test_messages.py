from uuid import uuid4

import pytest
from pydantic import ValidationError

from piclib.schemas.messages import (
    ProcessPictureMessage,
    ProcessVideoMessage,
    RecalculateFolderMessage,
    parse_message,
)


def test_video_message_uses_camel_case_envelope() -> None:
    library_id, file_id = uuid4(), uuid4()
    raw = ProcessVideoMessage(library_id=library_id, file_id=file_id, convert_to_mp4=True).to_json()

    assert '"type":"ProcessVideo"' in raw
    assert f'"libraryId":"{library_id}"' in raw
    assert f'"fileId":"{file_id}"' in raw
    assert '"convertToMp4":true' in raw


def test_parse_message_dispatches_on_type() -> None:
    library_id, folder_id = uuid4(), uuid4()
    parsed = parse_message(f'{{"type":"RecalculateFolder","libraryId":"{library_id}","folderId":"{folder_id}"}}')

    assert isinstance(parsed, RecalculateFolderMessage)
    assert parsed.library_id == library_id
    assert parsed.folder_id == folder_id


def test_parse_message_ignores_unknown_fields() -> None:
    library_id, file_id = uuid4(), uuid4()
    parsed = parse_message(
        f'{{"type":"ProcessPicture","libraryId":"{library_id}","fileId":"{file_id}","priority":3}}'
    )
    assert isinstance(parsed, ProcessPictureMessage)


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        '{"type":"Unknown","libraryId":"00000000-0000-0000-0000-000000000000"}',
        '{"type":"ProcessPicture","libraryId":"nope","fileId":"00000000-0000-0000-0000-000000000000"}',
        '{"type":"ProcessPicture","libraryId":"00000000-0000-0000-0000-000000000000"}',
    ],
)
def test_parse_message_rejects_malformed_payloads(raw: str) -> None:
    with pytest.raises(ValidationError):
        parse_message(raw)


def test_messages_are_immutable() -> None:
    message = ProcessPictureMessage(library_id=uuid4(), file_id=uuid4())
    with pytest.raises(ValidationError):
        message.file_id = uuid4()


def test_each_message_gets_its_own_id() -> None:
    library_id, folder_id = uuid4(), uuid4()
    first = RecalculateFolderMessage(library_id=library_id, folder_id=folder_id)
    second = RecalculateFolderMessage(library_id=library_id, folder_id=folder_id)

    assert first.message_id != second.message_id
    assert f'"messageId":"{first.message_id}"' in first.to_json()
    assert parse_message(first.to_json()) == first
