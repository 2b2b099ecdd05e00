from litrank.errors import RecoverableStageFailure
from litrank.lexical import LexicalScorer, cap_for_neural, compile_query, recall_filter
from litrank.pipeline_types import Candidate, ScoredCandidate
from litrank.query_analysis import analyze_query


OTHERS = [
    Candidate(title="Vision models", abstract="transformers applied to image classification benchmarks"),
    Candidate(title="Speech systems", abstract="recurrent networks and transformers for audio"),
    Candidate(title="Cooking at home", abstract="a guide to pasta and bread"),
]


def _score_of(scorer, query, candidate):
    scored = scorer.score(query, OTHERS + [candidate])
    return scored[-1].lexical_score


def test_every_candidate_gets_a_score_and_non_matches_score_zero():
    scorer = LexicalScorer()
    q = analyze_query("machine learning")
    cands = [
        Candidate(title="Graph methods", abstract="machine learning on graphs"),
        Candidate(title="Cooking pasta", abstract="boil the water first"),
    ]
    scored = scorer.score(q, cands)
    assert len(scored) == 2
    assert scored[0].lexical_score > 0
    assert scored[1].lexical_score == 0
    assert scored[0].lexical_norm == 1.0
    assert scored[1].lexical_norm == 0.0


def test_adding_a_term_occurrence_never_lowers_the_score():
    scorer = LexicalScorer()
    q = analyze_query("transformers")
    base = "a study of sequence models for long documents"
    previous = -1.0
    for n in range(6):
        abstract = base + " transformers" * n
        s = _score_of(scorer, q, Candidate(title="Sequence models", abstract=abstract))
        assert s >= previous
        previous = s
    assert previous > 0


def test_two_term_query_score_never_drops_as_either_term_repeats():
    scorer = LexicalScorer()
    q = analyze_query("graph learning")
    assert q.terms == ("graph", "learning")

    def score(m, n):
        abstract = "we evaluate " + "graph " * m + "learning " * n + "on citation data"
        return _score_of(scorer, q, Candidate(title="Evaluation", abstract=abstract))

    for m in range(8):
        for n in range(12):
            here = score(m, n)
            assert score(m, n + 1) >= here, (m, n)
            assert score(m + 1, n) >= here, (m, n)


def test_abstract_made_only_of_query_terms_scores():
    scorer = LexicalScorer()
    q = analyze_query("graph learning")
    scored = scorer.score(q, [Candidate(title="", abstract="graph learning graph")])
    assert scored[0].lexical_score > 0


def test_title_match_outranks_abstract_only_match():
    scorer = LexicalScorer()
    q = analyze_query("protein folding")
    in_title = Candidate(title="Protein folding with attention", abstract="we study structures")
    in_abstract = Candidate(title="Structures of molecules", abstract="we study protein folding")
    neither = Candidate(title="Market prices", abstract="inflation and demand")
    scored = scorer.score(q, [in_title, in_abstract, neither])
    assert scored[0].lexical_score > scored[1].lexical_score > scored[2].lexical_score


def test_short_query_terms_are_ignored():
    scorer = LexicalScorer()
    q = analyze_query("ab cd")
    assert q.terms == ()
    scored = scorer.score(q, OTHERS)
    assert len(scored) == len(OTHERS)
    assert all(sc.lexical_score == 0 for sc in scored)


def test_empty_abstracts_and_titles_do_not_crash():
    scorer = LexicalScorer()
    q = analyze_query("graph learning")
    cands = [Candidate(title="", abstract=None), Candidate(title="", abstract="")]
    scored = scorer.score(q, cands)
    assert [sc.lexical_score for sc in scored] == [0.0, 0.0]


def test_compile_query_builds_phrase_only_for_multi_term_queries():
    assert compile_query(analyze_query("graph")).phrase is None
    cq = compile_query(analyze_query("graph learning"))
    assert cq.terms == ("graph", "learning")
    assert cq.phrase.search("a graph learning method")
    assert not cq.phrase.search("learning a graph")


def _scored(scores):
    return [
        ScoredCandidate(candidate=Candidate(title=f"t{i}"), lexical_score=s)
        for i, s in enumerate(scores)
    ]


def test_recall_filter_passes_everything_when_all_scores_are_zero():
    scored = _scored([0.0] * 7)
    outcome = recall_filter(scored, threshold=1.0)
    assert len(outcome.value) == 7
    assert outcome.degraded
    assert isinstance(outcome.error, RecoverableStageFailure)


def test_recall_filter_bypasses_when_nearly_everything_is_below_threshold():
    scored = _scored([0.5] * 19 + [2.0])
    outcome = recall_filter(scored, threshold=1.0)
    assert len(outcome.value) == 20
    assert outcome.degraded


def test_recall_filter_applies_threshold_on_healthy_scores():
    scored = _scored([5, 4, 3, 2, 1.5, 1.2, 0.5, 0.2, 3, 2])
    outcome = recall_filter(scored, threshold=1.0)
    assert not outcome.degraded
    assert len(outcome.value) == 8
    assert all(sc.lexical_score >= 1.0 for sc in outcome.value)


def test_recall_filter_on_empty_input():
    outcome = recall_filter([], threshold=1.0)
    assert outcome.value == []
    assert not outcome.degraded


def test_cap_for_neural_keeps_top_lexical():
    scored = _scored([1, 5, 3, 4, 2])
    capped = cap_for_neural(scored, 3)
    assert [sc.lexical_score for sc in capped] == [5, 4, 3]
    assert len(cap_for_neural(scored, 10)) == 5
