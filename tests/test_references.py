from ppaper_lib.references import parse_entry, parse_references, split_entries

BIBLIOGRAPHY = (
    "[1] A. Smith, B. Jones, and C. Lee. Deep learning for things. In Proceedings of NeurIPS,"
    " pp. 1-10, 2020. doi:10.1000/xyz123.\n"
    "[2] D. Kim. Another title. Journal of Stuff, vol. 3, no. 2, 2019."
)


def test_split_entries():
    assert len(split_entries(BIBLIOGRAPHY)) == 2
    assert split_entries("") == []
    assert split_entries("[1] x") == []


def test_parse_full_entry():
    ref = parse_entry(split_entries(BIBLIOGRAPHY)[0], 1)
    assert ref.number == 1
    assert ref.authors == ["A. Smith", "B. Jones", "C. Lee"]
    assert ref.title == "Deep learning for things"
    assert ref.publication == "Proceedings of NeurIPS"
    assert (ref.year, ref.doi, ref.pages) == (2020, "10.1000/xyz123", "1-10")


def test_volume_and_issue():
    ref = parse_entry(split_entries(BIBLIOGRAPHY)[1], 2)
    assert ref.authors == ["D. Kim"]
    assert ref.title == "Another title"
    assert ref.publication == "Journal of Stuff"
    assert (ref.volume, ref.issue, ref.year) == ("3", "2", 2019)


def test_quoted_title():
    ref = parse_entry('3. J. Doe, "A quoted title," Nature, 2018.', 1)
    assert ref.number == 3
    assert ref.authors == ["J. Doe"]
    assert ref.title == "A quoted title"


def test_parse_references_assigns_numbered_ids():
    refs = parse_references(BIBLIOGRAPHY)
    assert [r.id for r in refs] == ["ref-1", "ref-2"]


def test_duplicate_numbers_get_unique_ids():
    text = "[1] A. Author. First title here.\n[1] B. Author. Second title here."
    refs = parse_references(text)
    assert refs[0].id == "ref-1"
    assert refs[1].id != "ref-1"
