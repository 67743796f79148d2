"""Prompt assembly: fixed operating rules + org methodology + session context."""

import re
from datetime import datetime
from typing import Any, Iterable, Optional
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from spin_agent.logging_config import get_logger
from spin_agent.models import Prompt
from spin_agent.services.clock import ensure_utc
from spin_agent.services.session_state import SessionState
from spin_agent.services.state_machine import SpinStage, is_gate_satisfied

logger = get_logger("prompt_service")

PROMPT_KIND = "spin_sdr"
LAYER_SEPARATOR = "\n\n---\n\n"

SYSTEM_INSTRUCTIONS = """🎯 **Papel do Assistente**
Você é um SDR virtual especializado em qualificação de prospects pelo WhatsApp. Seu objetivo é conduzir o prospect até um agendamento com o time comercial, com uma conversa humana, empática e profissional.

📋 **Coleta de Dados Obrigatória**
* Nome completo
* Tipo de pessoa: Física (PF) ou Jurídica (PJ)
* Se PJ: nome da empresa
* Melhor contato (telefone ou e-mail), se ainda não houver

🚦 **Regras de Avanço**
- Enquanto nome e tipo de pessoa (e empresa, se PJ) não estiverem coletados, permaneça na etapa de Situação e priorize essa coleta.
- Depois disso, avance pelas etapas SPIN uma de cada vez.

💬 **Comunicação**
✅ Português brasileiro
✅ Tom profissional, empático e consultivo
✅ Respostas curtas (2 a 3 frases)
✅ Uma pergunta por vez
✅ Não repita saudações nem se reapresente depois da primeira mensagem

🚨 **Regras Importantes**
- NUNCA repita perguntas já respondidas
- NUNCA peça dados que já foram coletados
- Responda todas as mensagens recentes do cliente em uma única resposta

📅 **Data atual:** {{$now}}"""

DEFAULT_METHODOLOGY = """## METODOLOGIA SPIN PARA QUALIFICAÇÃO

**1. SITUAÇÃO**
- Entenda o contexto atual do prospect e como trabalham hoje

**2. PROBLEMA**
- Identifique dores, dificuldades e lacunas no processo atual

**3. IMPLICAÇÃO**
- Explore as consequências dos problemas e o impacto no negócio

**4. NECESSIDADE**
- Faça o prospect verbalizar o valor da solução e conduza ao agendamento

**Diretrizes:** seja natural, progrida logicamente pelas etapas e mantenha o foco no agendamento."""

STATE_BLOCK_TEMPLATE = """## CONTEXTO DA SESSÃO
**Etapa SPIN atual:** {{stage}} ({{stage_label}})
**Pontuação de qualificação:** {{score}}/100

**Dados já coletados:**
- Nome: {{#if facts.name}}{{facts.name}}{{else}}(não informado){{/if}}
- Tipo de pessoa: {{#if facts.person_type}}{{facts.person_type}}{{else}}(não informado){{/if}}
- Empresa: {{#if facts.business}}{{facts.business}}{{else}}(não informado){{/if}}
- Contato: {{#if facts.contact}}{{facts.contact}}{{else}}(não informado){{/if}}

**Tópicos já perguntados:** {{#if asked_topics}}{{asked_topics}}{{else}}nenhum{{/if}}
**Tópicos já respondidos:** {{#if answered_topics}}{{answered_topics}}{{else}}nenhum{{/if}}

⚠️ NÃO pergunte novamente sobre tópicos já respondidos nem peça dados já coletados.
{{#if missing_facts}}⚠️ Antes de avançar para Problema, colete: {{missing_facts}}.{{/if}}

## HISTÓRICO DA CONVERSA
{{history}}

Responda às últimas mensagens do cliente."""

FACT_LABELS = {
    "name": "nome",
    "person_type": "tipo de pessoa (PF ou PJ)",
    "business": "nome da empresa",
}

# body stops at the nearest {{/if}} and never spans another {{#if}}, so innermost blocks match first
_IF_RE = re.compile(r"\{\{#if\s+([\w.$]+)\s*\}\}((?:(?!\{\{#if\b|\{\{/if\}\}).)*)\{\{/if\}\}", re.DOTALL)
_VAR_RE = re.compile(r"\{\{\s*([\w.$]+)\s*\}\}")

_MISSING = object()


def format_now(now: datetime, timezone: str = "America/Sao_Paulo") -> str:
    return ensure_utc(now).astimezone(ZoneInfo(timezone)).strftime("%d/%m/%Y %H:%M:%S")


def _lookup(variables: dict[str, Any], path: str) -> Any:
    if path in variables:
        return variables[path]
    current: Any = variables
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def _to_text(value: Any) -> str:
    if isinstance(value, (list, tuple, set)):
        return ", ".join(str(item) for item in value)
    return str(value)


def render_template(
    template: str,
    variables: Optional[dict[str, Any]] = None,
    now: Optional[datetime] = None,
    timezone: str = "America/Sao_Paulo",
) -> str:
    """Render ``{{var}}``, ``{{a.b}}``, ``{{#if x}}..{{else}}..{{/if}}`` and ``{{$now}}``.

    Unresolved placeholders are left as they are. Conditionals may nest.
    """
    variables = dict(variables or {})
    if now is not None:
        variables.setdefault("$now", format_now(now, timezone))

    def truthy(path: str) -> bool:
        value = _lookup(variables, path)
        return value is not _MISSING and bool(value)

    def branch(match: re.Match) -> str:
        then_part, _, else_part = match.group(2).partition("{{else}}")
        return then_part if truthy(match.group(1)) else else_part

    rendered = template
    replaced = 1
    while replaced:
        rendered, replaced = _IF_RE.subn(branch, rendered)

    def substitute(match: re.Match) -> str:
        value = _lookup(variables, match.group(1))
        if value is _MISSING or value is None:
            return match.group(0)
        return _to_text(value)

    return _VAR_RE.sub(substitute, rendered)


def get_org_instructions(db: Session, org_id) -> str:
    prompt = (
        db.query(Prompt)
        .filter(
            Prompt.organization_id == org_id,
            Prompt.kind == PROMPT_KIND,
            Prompt.is_active.is_(True),
        )
        .order_by(Prompt.version.desc(), Prompt.created_at.desc())
        .first()
    )
    if prompt is None or not (prompt.text or "").strip():
        return DEFAULT_METHODOLOGY
    return prompt.text


def format_history(messages: Iterable[Any], timezone: str = "America/Sao_Paulo") -> str:
    lines = []
    zone = ZoneInfo(timezone)
    for message in messages:
        speaker = "Cliente" if message.role == "user" else "Assistente"
        stamp = ensure_utc(message.created_at).astimezone(zone).strftime("%H:%M:%S")
        lines.append(f"[{stamp}] {speaker}: {message.content}")
    return "\n".join(lines)


def missing_gate_facts(state: SessionState) -> list[str]:
    if state.stage != SpinStage.SITUATION or is_gate_satisfied(state.facts):
        return []
    missing = []
    if not state.facts.name:
        missing.append(FACT_LABELS["name"])
    if not state.facts.person_type:
        missing.append(FACT_LABELS["person_type"])
    if state.facts.person_type == "PJ" and not state.facts.business:
        missing.append(FACT_LABELS["business"])
    return missing


def build_prompt(
    history: Iterable[Any],
    state: SessionState,
    org_instructions: Optional[str],
    now: datetime,
    timezone: str = "America/Sao_Paulo",
) -> str:
    variables = {
        "stage": state.stage.value,
        "stage_label": state.stage.label,
        "score": state.score,
        "facts": state.facts.to_dict(),
        "asked_topics": sorted(state.asked),
        "answered_topics": sorted(state.answered),
        "missing_facts": missing_gate_facts(state),
        "history": format_history(history, timezone) or "(sem mensagens)",
    }
    layers = [
        render_template(SYSTEM_INSTRUCTIONS, variables, now, timezone),
        render_template(org_instructions or DEFAULT_METHODOLOGY, variables, now, timezone),
        render_template(STATE_BLOCK_TEMPLATE, variables, now, timezone),
    ]
    return LAYER_SEPARATOR.join(layers)
