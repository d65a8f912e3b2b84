"""
Natural-language command -> resolved action.

Flow: filtered menu -> parser pick -> candidate -> resolver. When the parser
is unreachable and rule fallback is enabled, the rule-based candidate stands
in for the parser's pick.
"""

from dataclasses import dataclass
from typing import Optional

from folio.agents.action_catalog import (
    build_menu_json_schema,
    build_menu_prompt,
    generate_filtered_menu,
    resolve_menu_response,
)
from folio.agents.action_parser import ActionParser
from folio.agents.action_resolver import resolve_action
from folio.agents.command_parser import parse_command_rules
from folio.agents.schemas import ResolvedAction, position_contexts
from folio.core.error_codes import PortfolioError, PortfolioErrorCode
from folio.core.logging import get_logger
from folio.db.models import PortfolioData

logger = get_logger(__name__)

_FALLBACK_CODES = (PortfolioErrorCode.UPSTREAM_UNAVAILABLE, PortfolioErrorCode.MODEL_NOT_FOUND)


@dataclass
class CommandInterpretation:
    text: str
    action: ResolvedAction
    menu_id: Optional[str]
    source: str


async def interpret_command(
    text: str,
    data: PortfolioData,
    parser: ActionParser,
    rule_fallback: bool = False,
) -> CommandInterpretation:
    """Resolve ``text`` against ``data``.

    Raises:
        PortfolioError: parser failures, unless ``rule_fallback`` is set.
    """
    positions = position_contexts(data)
    menu = generate_filtered_menu(positions, text)
    try:
        response = await parser.parse(build_menu_prompt(menu), build_menu_json_schema(menu), text)
    except PortfolioError as e:
        if not rule_fallback or e.error_code not in _FALLBACK_CODES:
            raise
        logger.warning(
            "Parser %s unavailable, using rule fallback: %s", parser.name, e.message,
            extra={"event": "rule_fallback", "error_class": e.error_code.value},
        )
        candidate = parse_command_rules(text, positions)
        return CommandInterpretation(
            text=text,
            action=resolve_action(candidate, text, positions),
            menu_id=None,
            source="rules",
        )

    candidate = resolve_menu_response(response, positions)
    resolved = resolve_action(candidate, text, positions)
    logger.info(
        "Command resolved: %s -> %s (confidence %.2f)", response.menu_id, resolved.action.value, resolved.confidence,
        extra={"event": "command_resolved"},
    )
    return CommandInterpretation(text=text, action=resolved, menu_id=response.menu_id, source=parser.name)
