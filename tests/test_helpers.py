import pytest

from pipekit.contract import normalize_model_entries, split_model_id, strip_model_prefix
from pipekit.utils.sse import chunk_to_text
from pipekit.utils.text import last_user_message, truncate_for_log


@pytest.mark.parametrize(
    "model_id, expected",
    [
        ("vendor.modelname", ("vendor", "modelname")),
        ("openai_manifold.gpt-4o.2024", ("openai_manifold", "gpt-4o.2024")),
        ("standalone", ("", "standalone")),
        (".leading", ("", "leading")),
        ("trailing.", ("trailing", "")),
    ],
)
def test_split_model_id_splits_at_first_dot_only(model_id, expected):
    assert split_model_id(model_id) == expected


def test_strip_model_prefix():
    assert strip_model_prefix("vendor.modelname") == "modelname"
    assert strip_model_prefix("a.b.c") == "b.c"
    assert strip_model_prefix("modelname") == "modelname"


def test_truncate_for_log():
    assert truncate_for_log("short") == "short"
    long_text = "x" * 500
    truncated = truncate_for_log(long_text, limit=10)
    assert truncated.startswith("x" * 10)
    assert truncated.endswith("...[truncated]")


def test_chunk_to_text_handles_sse_lines_and_bytes():
    line = b'data: {"choices": [{"delta": {"content": "Hi"}}]}\n'
    assert chunk_to_text(line) == "Hi"
    assert chunk_to_text("data: [DONE]") == ""
    assert chunk_to_text({"choices": [{"delta": {"role": "assistant"}}]}) == ""
    assert chunk_to_text({"choices": [{"delta": {"content": "there"}}]}) == "there"
    assert chunk_to_text("plain text") == "plain text"
    assert chunk_to_text(None) == ""


def test_last_user_message_flattens_parts():
    messages = [
        {"role": "user", "content": "first"},
        {"role": "assistant", "content": "reply"},
        {"role": "user", "content": [{"type": "text", "text": "second"}, {"type": "image_url"}]},
    ]
    assert last_user_message(messages) == "second"
    assert last_user_message([{"role": "assistant", "content": "x"}]) is None


def test_normalize_model_entries_keeps_first_unique_id():
    entries = normalize_model_entries(
        [
            {"id": "a", "name": "A"},
            {"id": "a", "name": "A again"},
            {"id": "b"},
            {"name": "no id"},
            "not a dict",
        ]
    )
    assert entries == [{"id": "a", "name": "A"}, {"id": "b", "name": "b"}]
