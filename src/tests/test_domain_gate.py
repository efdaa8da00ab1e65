from __future__ import annotations

import json

import pytest

from src.rag.domain import DEFAULT_RULES, DomainGate, DomainRules, fold_text, load_rules
from src.rag.types import ConversationTurn

HISTORY = [
    ConversationTurn(role="user", content="¿Qué requisitos tiene el arraigo social?"),
    ConversationTurn(
        role="assistant",
        content="El arraigo social exige tres años de permanencia continuada en España.",
    ),
]


def test_fold_text_strips_accents_and_marks() -> None:
    assert fold_text("  ¿Cuánto   CUESTA la Renovación?  ") == "cuanto cuesta la renovacion?"


@pytest.mark.parametrize(
    "question",
    [
        "¿Qué documentos necesito para el arraigo social?",
        "Requisitos de la NACIONALIDAD ESPAÑOLA por residencia",
        "How do I get residency in Spain?",
        "Hola, buenos días",
        "Plazo de renovación de las residencias de larga duración",
    ],
)
def test_in_domain_questions_are_admitted(question: str) -> None:
    assert DomainGate().is_admitted(question)


@pytest.mark.parametrize(
    "question",
    [
        "What is the best pizza recipe?",
        "Tell me about football results",
    ],
)
def test_unrelated_questions_are_rejected(question: str) -> None:
    decision = DomainGate().evaluate(question)

    assert not decision.admitted
    assert decision.reason == "no_match"


def test_exclusion_wins_over_indicators() -> None:
    decision = DomainGate().evaluate("Quiero un visado H-1B para trabajar, ¿sirve mi residencia?")

    assert not decision.admitted
    assert decision.reason == "excluded"


def test_exclusion_checks_rewritten_query() -> None:
    gate = DomainGate()

    assert not gate.is_admitted("¿Y la residencia?", rewritten="residencia en Portugal")


def test_other_jurisdictions_are_excluded_even_with_history() -> None:
    assert not DomainGate().is_admitted("And what about the green card?", history=HISTORY)


def test_follow_up_admitted_through_history() -> None:
    gate = DomainGate()

    assert not gate.is_admitted("and how much does it cost?")
    decision = gate.evaluate("and how much does it cost?", history=HISTORY)

    assert decision.admitted
    assert decision.reason == "history"


def test_spanish_follow_up_opener_is_admitted_without_history() -> None:
    decision = DomainGate().evaluate("¿Y cuánto cuesta?")

    assert decision.admitted
    assert decision.reason == "keyword"


def test_topic_change_ignores_history() -> None:
    decision = DomainGate().evaluate("Ahora hablemos de recetas de cocina", history=HISTORY)

    assert not decision.admitted


def test_history_window_limits_lookback() -> None:
    history = HISTORY + [
        ConversationTurn(role="user", content="Tell me a joke"),
        ConversationTurn(role="assistant", content="Here is one about cats."),
        ConversationTurn(role="user", content="Another one"),
        ConversationTurn(role="assistant", content="Dogs this time."),
    ]

    assert not DomainGate().is_admitted("and how much does it cost?", history=history)


def test_rules_override_from_file(tmp_path) -> None:
    path = tmp_path / "rules.json"
    path.write_text(json.dumps({"indicators": ["pizza*"], "exclusions": []}), encoding="utf-8")

    rules = load_rules(str(path))
    gate = DomainGate(rules)

    assert gate.is_admitted("Best pizzas in Madrid")
    assert rules.follow_up_patterns == DEFAULT_RULES.follow_up_patterns


def test_rules_reject_non_string_lists() -> None:
    with pytest.raises(ValueError):
        DomainRules.from_dict({"indicators": [1, 2]})


def test_load_rules_without_path_returns_defaults() -> None:
    assert load_rules(None) is DEFAULT_RULES
