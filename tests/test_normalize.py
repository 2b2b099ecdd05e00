from litrank.config import MAX_INPUT_CHARS
from litrank.normalize import (
    basic_clean,
    lexical_tokens_for_bm25,
    normalize_for_lexical_index,
    normalize_query,
    normalize_title,
    query_terms,
)


def test_basic_clean_trims_whitespace_and_html():
    raw = "   <div>Hello   world</div>\n"
    assert basic_clean(raw) == "Hello world"


def test_basic_clean_strips_inline_markup_from_abstracts():
    raw = "<jats:p>Deep <i>learning</i> for proteins</jats:p>"
    cleaned = basic_clean(raw)
    assert "<" not in cleaned
    assert "Deep" in cleaned and "learning" in cleaned and "proteins" in cleaned


def test_basic_clean_handles_none_and_caps_length():
    assert basic_clean(None) == ""
    assert len(basic_clean("x" * (MAX_INPUT_CHARS + 500))) <= MAX_INPUT_CHARS


def test_basic_clean_normalises_fancy_quotes():
    assert basic_clean("“quoted” – text") == '"quoted" - text'


def test_synonyms_are_token_aware():
    norm = normalize_for_lexical_index("ML in HTML pages")
    assert norm.startswith("machine learning")
    assert "html" in norm


def test_bm25_tokens_keep_symbols():
    tokens = lexical_tokens_for_bm25("C# and C++ with node.js.")
    assert "c#" in tokens
    assert "c++" in tokens
    assert "node.js" in tokens


def test_query_terms_drop_stopwords_short_terms_and_duplicates():
    terms = query_terms("How does ML help the ML of it")
    assert terms == ["machine", "learning", "help"]


def test_query_terms_respect_min_length():
    assert query_terms("gut rna seq", min_length=4) == []
    assert query_terms("gut rna seq", min_length=3) == ["gut", "rna", "seq"]


def test_normalize_query_matches_index_normalisation():
    assert normalize_query("  Deep   Learning ") == normalize_for_lexical_index("deep learning")


def test_normalize_title_drops_punctuation():
    assert normalize_title("Deep Learning: A Survey!") == "deep learning a survey"
