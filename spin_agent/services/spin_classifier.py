"""Pluggable text classification used by the state machine.

The keyword/regex implementations below are deliberately simple and can be
swapped for a model-backed classifier without touching gating logic.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from spin_agent.services.session_state import SessionFacts
from spin_agent.services.state_machine import STAGE_ORDER, SpinStage

STAGE_TOPICS = {
    SpinStage.SITUATION: "situation",
    SpinStage.PROBLEM: "problem",
    SpinStage.IMPLICATION: "implication",
    SpinStage.NEED: "need",
}

SPIN_KEYWORDS = {
    SpinStage.SITUATION: [
        "atualmente uso",
        "hoje trabalho com",
        "hoje usamos",
        "nossa situação",
        "trabalho com",
        "sou da empresa",
        "minha empresa",
        "nossa equipe",
        "funcionários",
        "vi vocês",
        "indicação",
    ],
    SpinStage.PROBLEM: [
        "problema",
        "dificuldade",
        "não consigo",
        "não funciona",
        "preciso resolver",
        "está ruim",
        "demora muito",
        "muito caro",
        "insatisfeito",
        "reclamação",
        "limitação",
        "erro",
        "falha",
        "complicado",
    ],
    SpinStage.IMPLICATION: [
        "se não resolver",
        "pode afetar",
        "impacto",
        "consequência",
        "prejudica",
        "atrasa",
        "perde cliente",
        "perdendo clientes",
        "perde dinheiro",
        "perdendo dinheiro",
        "custo alto",
        "desperdício",
        "se continuar assim",
        "vai piorar",
        "risco",
        "concorrente",
    ],
    SpinStage.NEED: [
        "quanto custa",
        "qual o preço",
        "qual preço",
        "como funciona",
        "quando podemos",
        "investimento",
        "orçamento",
        "proposta",
        "quero contratar",
        "vamos fechar",
        "me interessa",
        "quando começa",
        "prazo",
        "implementação",
        "pode ajudar",
        "solução",
        "agendar",
        "reunião",
    ],
}


@dataclass
class SpinClassification:
    stage: Optional[SpinStage]
    confidence: float = 0.0
    matched_topics: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)


class SpinClassifier(ABC):
    @abstractmethod
    def classify(self, text: str) -> SpinClassification:
        pass


class FactExtractor(ABC):
    @abstractmethod
    def extract(self, text: str) -> SessionFacts:
        pass


class KeywordSpinClassifier(SpinClassifier):
    """Matches Portuguese sales vocabulary. Ties go to the later stage."""

    def __init__(self, keywords: Optional[dict] = None):
        self.keywords = keywords or SPIN_KEYWORDS

    def classify(self, text: str) -> SpinClassification:
        normalized = (text or "").lower()
        best_stage = None
        best_hits: list[str] = []
        topics = []

        for stage in STAGE_ORDER:
            hits = [keyword for keyword in self.keywords.get(stage, []) if keyword in normalized]
            if not hits:
                continue
            topics.append(STAGE_TOPICS[stage])
            if len(hits) >= len(best_hits):
                best_stage = stage
                best_hits = hits

        if best_stage is None:
            return SpinClassification(stage=None)

        patterns = self.keywords[best_stage]
        confidence = min(1.0, len(best_hits) / len(patterns) + len(best_hits) * 0.1)
        return SpinClassification(
            stage=best_stage,
            confidence=round(confidence, 2),
            matched_topics=topics,
            keywords=best_hits,
        )


NAME_PATTERN = re.compile(
    r"(?i:me chamo|meu nome [ée]|aqui [ée] [oa]|aqui [ée]|sou [oa])\s+"
    r"([A-Za-zÀ-ÿ][a-zà-ÿ]+(?:\s+[A-ZÀ-Ý][a-zà-ÿ]+)?)"
)
PJ_PATTERN = re.compile(
    r"\b(?:pessoa jur[ií]dica|pj|cnpj|minha empresa|nossa empresa|sou da empresa|represento a)\b",
    re.IGNORECASE,
)
PF_PATTERN = re.compile(
    r"\b(?:pessoa f[ií]sica|pf|cpf|para mim mesm[oa]|uso pessoal|sou aut[oô]nom[oa])\b",
    re.IGNORECASE,
)
BUSINESS_PATTERN = re.compile(
    r"(?:empresa|loja|neg[oó]cio|cl[ií]nica|escrit[oó]rio)\s+(?:chamada|se chama|é a|é o|da|do|de)?\s*"
    r"([A-Z0-9][\w&\.\-]*(?:\s+[A-Z0-9][\w&\.\-]*){0,3})"
)
EMAIL_PATTERN = re.compile(r"[\w\.\-+]+@[\w\-]+\.[\w\.\-]+")
PHONE_PATTERN = re.compile(r"(?:\+?55\s?)?\(?\d{2}\)?\s?9?\d{4}[\-\s]?\d{4}")


class RegexFactExtractor(FactExtractor):
    def extract(self, text: str) -> SessionFacts:
        text = text or ""

        name = None
        match = NAME_PATTERN.search(text)
        if match:
            name = " ".join(part.capitalize() for part in match.group(1).split())

        person_type = None
        if PJ_PATTERN.search(text):
            person_type = "PJ"
        elif PF_PATTERN.search(text):
            person_type = "PF"

        business = None
        match = BUSINESS_PATTERN.search(text)
        if match:
            business = match.group(1).strip(" .")
            if person_type is None:
                person_type = "PJ"

        contact = None
        match = EMAIL_PATTERN.search(text) or PHONE_PATTERN.search(text)
        if match:
            contact = match.group(0).strip()

        return SessionFacts(name=name, person_type=person_type, business=business, contact=contact)


ASKED_TOPIC_PATTERNS = {
    "name": re.compile(r"\b(?:seu nome|como (?:você )?se chama|com quem (?:eu )?falo)\b", re.IGNORECASE),
    "person_type": re.compile(
        r"\b(?:pessoa f[ií]sica|pessoa jur[ií]dica|pf ou pj|para você ou para (?:sua )?empresa)\b",
        re.IGNORECASE,
    ),
    "business": re.compile(r"\b(?:nome da (?:sua )?empresa|qual (?:é )?a (?:sua )?empresa|sua empresa)\b", re.IGNORECASE),
    "contact": re.compile(r"\b(?:seu e-?mail|seu telefone|melhor contato|seu whatsapp)\b", re.IGNORECASE),
    "situation": re.compile(r"\b(?:hoje|atualmente|como vocês? (?:lida|trabalha|faz))\b", re.IGNORECASE),
    "problem": re.compile(r"\b(?:dificuldade|desafio|problema|dor)\b", re.IGNORECASE),
    "implication": re.compile(r"\b(?:impacto|consequência|quanto isso (?:custa|afeta)|afeta)\b", re.IGNORECASE),
    "need": re.compile(r"\b(?:agendar|reunião|solução ideal|ajudaria|proposta)\b", re.IGNORECASE),
}


def detect_asked_topics(reply_text: str) -> set[str]:
    """Topics the assistant asked about in a reply. Only sentences ending in '?' count."""
    topics = set()
    for sentence in re.findall(r"[^.!?\n]*\?", reply_text or ""):
        for topic, pattern in ASKED_TOPIC_PATTERNS.items():
            if pattern.search(sentence):
                topics.add(topic)
    return topics
