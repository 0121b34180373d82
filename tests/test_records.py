import pytest

from usermatic import InputRecord, ProvisionRequest, RecordSkip, fncParseLine, fncReadRecords


def test_parses_username_and_groups_in_order():
    result = fncParseLine(1, "alice; sudo,dev")
    assert result == ProvisionRequest(1, "alice", ("sudo", "dev"))


def test_groups_are_trimmed_and_empty_tokens_dropped():
    result = fncParseLine(7, "  bob ;  web , ,db,  ,web ")
    # duplicates survive, only empties go
    assert result == ProvisionRequest(7, "bob", ("web", "db", "web"))


def test_empty_group_list_is_allowed():
    assert fncParseLine(3, "carol;") == ProvisionRequest(3, "carol", ())
    assert fncParseLine(4, "carol ;   ") == ProvisionRequest(4, "carol", ())


def test_leading_bom_is_stripped():
    assert fncParseLine(1, "\ufeffalice; dev") == ProvisionRequest(1, "alice", ("dev",))


def test_splits_on_first_separator_only():
    result = fncParseLine(1, "dave; a;b,c")
    assert result.username == "dave"
    assert result.groups == ("a;b", "c")


@pytest.mark.parametrize("raw", ["", "   ", "\t", "\ufeff  "])
def test_blank_lines_are_skipped_at_info(raw):
    result = fncParseLine(2, raw)
    assert isinstance(result, RecordSkip)
    assert result.reason == "empty"
    assert result.level == "INFO"


@pytest.mark.parametrize("raw", ["# comment", "   # indented; with separator"])
def test_comments_are_skipped_at_info(raw):
    result = fncParseLine(5, raw)
    assert result.reason == "comment"
    assert result.level == "INFO"
    assert result.message.startswith("Line 5:")


def test_missing_separator_warns():
    result = fncParseLine(9, "alice sudo,dev")
    assert result.reason == "missing separator"
    assert result.level == "WARN"
    assert result.username == ""
    assert "Line 9" in result.message


@pytest.mark.parametrize("username", ["bad user", "", "al!ce", "bob@example", "ünï"])
def test_invalid_usernames_warn(username):
    result = fncParseLine(4, f"{username}; x")
    assert isinstance(result, RecordSkip)
    assert result.reason == "invalid username"
    assert result.level == "WARN"
    assert result.username == username


@pytest.mark.parametrize("username", ["a", "svc_backup", "j.doe", "web-01", "ALICE", "-dash"])
def test_valid_usernames(username):
    assert fncParseLine(1, f"{username};").username == username


def test_read_records_numbers_lines_and_drops_newlines(tmp_path):
    path = tmp_path / "users.txt"
    path.write_bytes(b"\xef\xbb\xbfalice; dev\r\n\r\n# c\ncarol;")
    records = list(fncReadRecords(path))
    assert records == [
        InputRecord(1, "alice; dev"),
        InputRecord(2, ""),
        InputRecord(3, "# c"),
        InputRecord(4, "carol;"),
    ]


def test_read_records_tolerates_undecodable_bytes(tmp_path):
    path = tmp_path / "users.txt"
    path.write_bytes(b"al\xffce; dev\nbob;\n")
    records = list(fncReadRecords(path))
    assert isinstance(fncParseLine(1, records[0].raw_text), RecordSkip)
    assert fncParseLine(2, records[1].raw_text).username == "bob"
