from litrank.domain_filter import GENERAL, DomainAspectFilter
from litrank.pipeline_types import Candidate, ScoredCandidate
from litrank.query_analysis import analyze_query


def _sc(title, abstract=""):
    return ScoredCandidate(candidate=Candidate(title=title, abstract=abstract))


def test_classify_picks_domain_with_most_hits():
    f = DomainAspectFilter()
    tags = f.classify("Deep learning for cancer diagnosis in hospital patients with clinical trial data")
    assert tags.primary == "Medicine"
    assert "Computer Science" in tags.tags


def test_classify_ties_go_to_earlier_rule():
    f = DomainAspectFilter()
    tags = f.classify("an algorithm for patients")
    assert tags.primary == "Computer Science"


def test_unmatched_text_is_general():
    tags = DomainAspectFilter().classify("a walk in the park")
    assert tags.primary == GENERAL


def test_aspects_extraction():
    f = DomainAspectFilter()
    a = f.extract_aspects_normalized("a systematic review of social learning in wild chimpanzees and other animals")
    assert "Animals" in a.subjects
    assert "Primates" in a.subjects
    assert a.study_type == "Review"
    assert "Social" in a.behaviors and "Cognitive" in a.behaviors


def test_query_aspects():
    f = DomainAspectFilter()
    qa = f.parse_query_aspects("social behaviour of animals")
    assert qa.requires_animals
    assert qa.requires_research
    assert qa.behavior_type == "Social"

    # "learning" alone is not a behaviour requirement
    assert f.parse_query_aspects("machine learning").behavior_type is None
    assert not f.parse_query_aspects("tourism marketing").requires_research


def test_filter_uses_query_domains_by_default():
    f = DomainAspectFilter()
    q = analyze_query("neural network algorithm", f)
    assert "Computer Science" in q.domains

    cands = [
        _sc("Graph algorithm", "a neural network for software"),
        _sc("Hotel reviews", "tourism and hospitality for visitors"),
        _sc("A quiet essay", "thoughts on nothing in particular"),
    ]
    outcome = f.filter(q, cands)
    assert not outcome.degraded
    kept = [sc.candidate.title for sc in outcome.value]
    assert kept == ["Graph algorithm", "A quiet essay"]
    assert outcome.value[0].domain == "Computer Science"
    assert outcome.value[0].domain_match is True


def test_explicit_allowed_domains_match_primary_tag():
    f = DomainAspectFilter()
    q = analyze_query("cells", f)
    cands = [
        _sc("Gene expression", "genes and proteins in cells of the genome"),
        _sc("Market study", "inflation in financial markets"),
    ]
    outcome = f.filter(q, cands, allowed_domains={"Biology"})
    assert [sc.candidate.title for sc in outcome.value] == ["Gene expression"]


def test_research_queries_reject_tourism_studies():
    f = DomainAspectFilter()
    q = analyze_query("primate social behavior", f)
    cands = [
        _sc("Primate groups", "social hierarchy among monkeys and other animals"),
        _sc("Monkey tourism", "tourists visiting monkeys; social interaction with visitors and animals"),
    ]
    outcome = f.filter(q, cands, allowed_domains=None)
    assert [sc.candidate.title for sc in outcome.value] == ["Primate groups"]


def test_filter_never_empties_the_batch():
    f = DomainAspectFilter()
    q = analyze_query("cells", f)
    cands = [_sc("Market study", "inflation in financial markets"), _sc("Hotels", "tourism")]
    outcome = f.filter(q, cands, allowed_domains={"Physics"})
    assert outcome.degraded
    assert len(outcome.value) == 2
    assert all(sc.domain_match is False for sc in outcome.value)


def test_open_filter_when_query_has_no_domain():
    f = DomainAspectFilter()
    q = analyze_query("interesting things", f)
    assert q.domains == frozenset()
    cands = [_sc("Market study", "inflation in financial markets"), _sc("Quantum optics", "photon")]
    outcome = f.filter(q, cands)
    assert len(outcome.value) == 2
    assert not outcome.degraded
