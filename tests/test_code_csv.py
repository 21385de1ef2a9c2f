from models.code_models import CodeImportItem
from service.code_csv_service import export_codes_csv, parse_codes_csv


def test_export_has_header_and_quotes_only_when_needed():
    csv_text = export_codes_csv([
        {"code": "ABCD2345", "name": "Alice"},
        {"code": "EFGH6789", "name": "Smith, Bob"},
        {"code": "JKMN2345", "name": 'The "Boss"'},
        {"code": "PQRS6789", "name": None},
    ])
    lines = csv_text.splitlines()
    assert lines[0] == "code,name"
    assert lines[1] == "ABCD2345,Alice"
    assert lines[2] == 'EFGH6789,"Smith, Bob"'
    assert lines[3] == 'JKMN2345,"The ""Boss"""'
    assert lines[4] == "PQRS6789,"


def test_export_without_names():
    csv_text = export_codes_csv([{"code": "ABCD2345", "name": "Alice"}], include_names=False)
    assert csv_text.splitlines() == ["code", "ABCD2345"]


def test_round_trip_keeps_awkward_names():
    items = [
        CodeImportItem(code="ABCD2345", name="plain"),
        CodeImportItem(code="EFGH6789", name="comma, inside"),
        CodeImportItem(code="JKMN2345", name='quote " inside'),
        CodeImportItem(code="PQRS6789", name="line\nbreak"),
        CodeImportItem(code="TUVW2345", name="carriage\r\nreturn"),
        CodeImportItem(code="XYZA6789", name=""),
        CodeImportItem(code="BCDE2345", name='all, of "it"\nat once'),
    ]
    parsed, skipped = parse_codes_csv(export_codes_csv(items))
    assert skipped == 0
    assert parsed == items


def test_parse_header_is_case_insensitive_and_picks_columns():
    text = "Name,CODE,extra\nAlice, abcd 2345 ,x\nBob,efgh6789,y\n"
    items, skipped = parse_codes_csv(text)
    assert skipped == 0
    assert items == [
        CodeImportItem(code="ABCD2345", name="Alice"),
        CodeImportItem(code="EFGH6789", name="Bob"),
    ]


def test_parse_header_without_name_column_leaves_names_absent():
    items, _ = parse_codes_csv("code\nabcd2345\n")
    assert items == [CodeImportItem(code="ABCD2345", name=None)]


def test_parse_without_header_uses_first_two_columns():
    items, _ = parse_codes_csv("abcd2345,Alice\nefgh6789\njkmn2345,\npqrs6789,  \n")
    assert items == [
        CodeImportItem(code="ABCD2345", name="Alice"),
        CodeImportItem(code="EFGH6789", name=None),
        CodeImportItem(code="JKMN2345", name=None),
        CodeImportItem(code="PQRS6789", name=None),
    ]


def test_blank_name_clears_only_under_a_name_header():
    items, _ = parse_codes_csv("code,name\nabcd2345,\n")
    assert items == [CodeImportItem(code="ABCD2345", name="")]


def test_parse_skips_rows_without_code_and_blank_lines():
    items, skipped = parse_codes_csv("code,name\n,Nobody\n\nabcd2345,Alice\n   ,Ghost\n")
    assert [i.code for i in items] == ["ABCD2345"]
    assert skipped == 2


def test_parse_ignores_byte_order_mark():
    items, _ = parse_codes_csv("\ufeffcode,name\nabcd2345,Alice\n")
    assert items == [CodeImportItem(code="ABCD2345", name="Alice")]


def test_parse_empty_text():
    assert parse_codes_csv("") == ([], 0)
