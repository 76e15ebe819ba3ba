"""
Decoder for GetUserStatus responses
Validates the payload and normalises it into QuotaModels, user info and prompt credits
"""

import json
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from errors import DecodeError, ServerReportedError, ServiceNotInitializedError
from .models import DecodedStatus, PromptCredits, QuotaModel, UserInfo

logger = logging.getLogger(__name__)

INVALID_RESET_FALLBACK = timedelta(hours=24)

NOT_INITIALIZED_PATTERN = re.compile(
    r'not (?:yet )?initiali[sz]ed|still initiali[sz]ing|initiali[sz]ing|not ready', re.IGNORECASE)

USER_CAPABILITY_FLAGS = {
    'browser_enabled': 'browserEnabled',
    'knowledge_base_enabled': 'knowledgeBaseEnabled',
    'can_buy_more_credits': 'canBuyMoreCredits',
    'has_autocomplete_fast_mode': 'hasAutocompleteFastMode',
    'cascade_web_search_enabled': 'cascadeWebSearchEnabled',
    'can_generate_commit_messages': 'canGenerateCommitMessages',
    'has_tab_to_jump': 'hasTabToJump',
    'allow_sticky_premium_models': 'allowStickyPremiumModels',
    'allow_premium_command_models': 'allowPremiumCommandModels',
    'can_customize_app_icon': 'canCustomizeAppIcon',
    'cascade_can_auto_run_commands': 'cascadeCanAutoRunCommands',
    'can_allow_cascade_in_background': 'canAllowCascadeInBackground',
}


def parse_reset_time(value: Any, now: datetime) -> Tuple[datetime, bool]:
    """
    Parse an ISO-8601 reset timestamp.
    Returns (reset_time, valid); invalid values become now + 24h.
    """
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed, True
        except ValueError:
            pass
    return now + INVALID_RESET_FALLBACK, False


def _validate(data: Any) -> Dict[str, Any]:
    """Return userStatus or raise the matching error"""
    if isinstance(data, dict) and isinstance(data.get('userStatus'), dict):
        return data['userStatus']

    if isinstance(data, dict):
        message = data.get('message')
        code = data.get('code')
        signature = f"{message or ''} {code or ''}"
        if NOT_INITIALIZED_PATTERN.search(signature):
            raise ServiceNotInitializedError(f"Language server not yet initialized: {signature.strip()}")
        if isinstance(message, str):
            raise ServerReportedError(message)

    preview = json.dumps(data)[:100] if data is not None else 'empty response'
    raise DecodeError(f"Invalid response structure: {preview}")


def _rank_map(config_data: Dict[str, Any]) -> Dict[str, int]:
    """label -> rank from the first (recommended) model sort"""
    sorts = config_data.get('clientModelSorts') or []
    ranks: Dict[str, int] = {}
    if not sorts:
        return ranks
    index = 0
    for group in sorts[0].get('groups') or []:
        for label in group.get('modelLabels') or []:
            if label not in ranks:
                ranks[label] = index
                index += 1
    return ranks


def _clamp_fraction(value: Any, label: str) -> Optional[float]:
    if value is None:
        return None
    try:
        fraction = float(value)
    except (TypeError, ValueError):
        logger.warning(f"[DECODE] Non-numeric remainingFraction for {label}: {value!r}")
        return None
    if fraction < 0 or fraction > 1:
        logger.warning(f"[DECODE] remainingFraction out of range for {label}: {fraction}, clamping")
        fraction = min(1.0, max(0.0, fraction))
    return fraction


def decode_models(status: Dict[str, Any], now: datetime) -> List[QuotaModel]:
    """Models with quota info, sorted by recommended rank then label"""
    config_data = status.get('cascadeModelConfigData') or {}
    ranks = _rank_map(config_data)
    models = []

    for entry in config_data.get('clientModelConfigs') or []:
        quota_info = entry.get('quotaInfo')
        if not quota_info:
            continue

        label = entry.get('label') or 'Unknown'
        reset_time, valid = parse_reset_time(quota_info.get('resetTime'), now)
        if not valid:
            logger.warning(f"[DECODE] Invalid resetTime for model {label}: {quota_info.get('resetTime')!r}")

        models.append(QuotaModel(
            model_id=(entry.get('modelOrAlias') or {}).get('model') or 'unknown',
            label=label,
            remaining_fraction=_clamp_fraction(quota_info.get('remainingFraction'), label),
            reset_time=reset_time,
            reset_time_valid=valid,
            supports_images=entry.get('supportsImages'),
            is_recommended=entry.get('isRecommended'),
            tag_title=entry.get('tagTitle'),
            supported_mime_types=entry.get('supportedMimeTypes'),
            rank=ranks.get(label),
        ))

    return sort_models(models)


def sort_models(models: List[QuotaModel]) -> List[QuotaModel]:
    """Ranked models first in rank order, unranked after them alphabetically"""
    return sorted(models, key=lambda m: (m.rank is None, m.rank if m.rank is not None else 0, m.label))


def decode_prompt_credits(status: Dict[str, Any]) -> Optional[PromptCredits]:
    plan_status = status.get('planStatus') or {}
    plan = plan_status.get('planInfo')
    credits = plan_status.get('availablePromptCredits')
    if not plan or credits is None:
        return None

    try:
        monthly = float(plan.get('monthlyPromptCredits') or 0)
        available = float(credits)
    except (TypeError, ValueError):
        return None
    if monthly <= 0:
        return None

    return PromptCredits(
        available=available,
        monthly=monthly,
        used_percentage=(monthly - available) / monthly * 100,
        remaining_percentage=available / monthly * 100,
    )


def decode_user_info(status: Dict[str, Any]) -> UserInfo:
    plan_status = status.get('planStatus') or {}
    plan = plan_status.get('planInfo') or {}
    tier = status.get('userTier') or {}

    capabilities = {key: plan.get(source) is True for key, source in USER_CAPABILITY_FLAGS.items()}
    team_config = plan.get('defaultTeamConfig') or {}
    capabilities['allow_mcp_servers'] = team_config.get('allowMcpServers') is True
    capabilities['accepted_latest_terms_of_service'] = status.get('acceptedLatestTermsOfService') is True

    return UserInfo(
        name=status.get('name') or 'Unknown User',
        email=status.get('email') or 'N/A',
        plan_name=plan.get('planName') or 'N/A',
        tier=tier.get('name') or plan.get('teamsTier') or 'N/A',
        tier_id=tier.get('id') or 'N/A',
        tier_description=tier.get('description') or 'N/A',
        monthly_prompt_credits=plan.get('monthlyPromptCredits') or 0,
        monthly_flow_credits=plan.get('monthlyFlowCredits') or 0,
        available_prompt_credits=plan_status.get('availablePromptCredits') or 0,
        available_flow_credits=plan_status.get('availableFlowCredits') or 0,
        capabilities=capabilities,
    )


def decode_user_status(data: Any, now: Optional[datetime] = None) -> DecodedStatus:
    """
    Decode a GetUserStatus payload.

    Raises ServiceNotInitializedError when the server is still starting,
    ServerReportedError when it returned its own message, DecodeError otherwise.
    """
    now = now or datetime.now(timezone.utc)
    status = _validate(data)
    try:
        return DecodedStatus(
            models=decode_models(status, now),
            user_info=decode_user_info(status),
            prompt_credits=decode_prompt_credits(status),
        )
    except (AttributeError, TypeError, KeyError, IndexError) as e:
        # A nested value of the wrong shape, e.g. a string where an object belongs
        preview = json.dumps(status, default=str)[:100]
        raise DecodeError(f"Invalid response structure ({e}): {preview}") from e
