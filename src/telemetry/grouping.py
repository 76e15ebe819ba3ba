"""
Snapshot assembly and quota grouping
Pure transformation from decoded models + display settings to a QuotaSnapshot
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from .models import DecodedStatus, DisplaySettings, QuotaGroup, QuotaModel, QuotaSnapshot

logger = logging.getLogger(__name__)

# Decimal digits of remainingFraction compared by the consensus check
SIGNATURE_PRECISION = 6

OTHER_FAMILY = 'Other'

# Curated model families used when signature grouping is degenerate
MODEL_FAMILIES = [
    ('Gemini Flash', {'MODEL_PLACEHOLDER_M18'}),
    ('Gemini', {'MODEL_PLACEHOLDER_M7', 'MODEL_PLACEHOLDER_M8', 'MODEL_PLACEHOLDER_M9'}),
    ('Claude', {
        'MODEL_CLAUDE_4_5_SONNET',
        'MODEL_CLAUDE_4_5_SONNET_THINKING',
        'MODEL_PLACEHOLDER_M12',  # Claude Opus 4.5 (Thinking)
        'MODEL_OPENAI_GPT_OSS_120B_MEDIUM',
    }),
]


@dataclass
class AssemblyResult:
    """Snapshot plus the group mapping to persist, if it changed"""
    snapshot: QuotaSnapshot
    mapping_update: Optional[Dict[str, str]] = None
    evicted: Optional[List[str]] = None


def quota_signature(model: QuotaModel) -> str:
    """Quantized remaining fraction + exact reset timestamp"""
    reset_ms = int(model.reset_time.timestamp() * 1000)
    if model.remaining_fraction is None:
        # No quota data never matches an exhausted pool
        return f"none_{reset_ms}"
    return f"{model.remaining_fraction:.{SIGNATURE_PRECISION}f}_{reset_ms}"


def model_family(model: QuotaModel) -> str:
    """Curated family for a model: known ids first, then label keywords"""
    for family, ids in MODEL_FAMILIES:
        if model.model_id in ids:
            return family

    label = model.label.lower()
    if 'gemini' in label:
        return 'Gemini Flash' if 'flash' in label else 'Gemini'
    if 'claude' in label or 'gpt' in label:
        return 'Claude'
    return OTHER_FAMILY


def _stable_mappings(buckets: Dict[str, List[str]]) -> Dict[str, str]:
    """Group id = sorted member ids joined by '_'"""
    mappings = {}
    for model_ids in buckets.values():
        group_id = '_'.join(sorted(model_ids))
        for model_id in model_ids:
            mappings[model_id] = group_id
    return mappings


def group_by_family(models: List[QuotaModel]) -> Dict[str, str]:
    buckets: Dict[str, List[str]] = {}
    for model in models:
        buckets.setdefault(model_family(model), []).append(model.model_id)
    return _stable_mappings(buckets)


def calculate_group_mappings(models: List[QuotaModel]) -> Dict[str, str]:
    """
    Automatic model_id -> group_id mapping by quota signature.
    Falls back to curated families when every model would land in one group.
    """
    buckets: Dict[str, List[str]] = {}
    for model in models:
        buckets.setdefault(quota_signature(model), []).append(model.model_id)

    if len(buckets) == 1 and len(models) > 1:
        logger.info("[GROUP] Auto-grouping is degenerate (all models identical), using model family grouping")
        return group_by_family(models)

    return _stable_mappings(buckets)


def apply_visibility(models: List[QuotaModel], visible_models: List[str]) -> List[QuotaModel]:
    """Filter to the allow-list; ignored entirely when it would hide every model"""
    if not visible_models:
        return models

    visible = set(visible_models)
    filtered = [m for m in models if m.model_id in visible]
    if not filtered and models:
        logger.warning(
            f"[GROUP] Visible models filter matched nothing (models: {len(models)}, "
            f"configured: {len(visible_models)}), showing all models"
        )
        return models
    return filtered


def apply_custom_names(models: List[QuotaModel], custom_names: Dict[str, str]) -> List[QuotaModel]:
    return [replace(m, display_name=custom_names.get(m.model_id) or m.label) for m in models]


def _unique_key(groups: Dict[str, List[QuotaModel]], key: str) -> str:
    candidate, suffix = key, 1
    while candidate in groups:
        suffix += 1
        candidate = f"{key}#{suffix}"
    return candidate


def build_group_map(models: List[QuotaModel], mappings: Dict[str, str]) -> Dict[str, List[QuotaModel]]:
    """Resolve each model to its mapped group; unmapped models become singletons"""
    groups: Dict[str, List[QuotaModel]] = {}
    for model in models:
        group_id = mappings.get(model.model_id)
        if group_id:
            groups.setdefault(group_id, []).append(model)
        else:
            groups[_unique_key(groups, model.model_id)] = [model]
    return groups


def enforce_consensus(groups: Dict[str, List[QuotaModel]]) -> List[str]:
    """
    Majority vote per multi-member group: members whose signature differs from
    the most frequent one are moved into their own singleton group.
    Mutates groups in place and returns the evicted model ids.
    """
    evicted_models: List[Tuple[str, QuotaModel]] = []

    for group_id, members in list(groups.items()):
        if len(members) <= 1:
            continue

        counts: Dict[str, int] = {}
        for model in members:
            signature = quota_signature(model)
            counts[signature] = counts.get(signature, 0) + 1

        majority, max_count = '', 0
        for signature, count in counts.items():
            if count > max_count:
                majority, max_count = signature, count

        keep = []
        for model in members:
            if quota_signature(model) == majority:
                keep.append(model)
            else:
                logger.info(f"[GROUP] Removing model \"{model.label}\" from group \"{group_id}\" due to quota mismatch")
                evicted_models.append((group_id, model))
        groups[group_id] = keep

    for _, model in evicted_models:
        groups[_unique_key(groups, model.model_id)] = [model]

    for group_id in [gid for gid, members in groups.items() if not members]:
        del groups[group_id]

    if evicted_models:
        logger.info(f"[GROUP] Removed {len(evicted_models)} models from groups due to quota mismatch")
    return [model.model_id for _, model in evicted_models]


def _group_name(members: List[QuotaModel], custom_names: Dict[str, str], index: int) -> str:
    votes: Dict[str, int] = {}
    for model in members:
        name = custom_names.get(model.model_id)
        if name:
            votes[name] = votes.get(name, 0) + 1
    if votes:
        return max(votes.items(), key=lambda item: item[1])[0]

    if len(members) == 1:
        return members[0].display_name or members[0].label

    families = {model_family(m) for m in members}
    if len(families) == 1:
        return families.pop()
    return f"Group {index}"


def build_groups(models: List[QuotaModel], mappings: Dict[str, str],
                 custom_names: Dict[str, str]) -> Tuple[List[QuotaGroup], List[str]]:
    """Group models, enforce consensus, name and order the groups"""
    group_map = build_group_map(models, mappings)
    evicted = enforce_consensus(group_map)

    groups = []
    for index, (group_id, members) in enumerate(group_map.items(), start=1):
        groups.append(QuotaGroup(group_id=group_id, name=_group_name(members, custom_names, index), members=members))

    position = {m.model_id: i for i, m in enumerate(models)}
    groups.sort(key=lambda g: min(position.get(m.model_id, len(models)) for m in g.members))
    return groups, evicted


def assemble_snapshot(decoded: DecodedStatus, settings: DisplaySettings, now: datetime,
                      source: str = "local", connected: bool = True) -> AssemblyResult:
    """
    Apply display settings to decoded models and build the snapshot.
    Snapshots rebuilt from the quota cache pass connected=False.
    """
    all_models = apply_custom_names(decoded.models, settings.model_custom_names)
    models = apply_visibility(all_models, settings.visible_models)

    groups = None
    mapping_update = None
    evicted = None

    if settings.grouping_enabled:
        saved = dict(settings.group_mappings)
        if saved:
            groups, evicted = build_groups(models, saved, settings.grouping_custom_names)
            if evicted:
                mapping_update = {k: v for k, v in saved.items() if k not in evicted}
        elif models:
            mapping_update = calculate_group_mappings(all_models)
            logger.info(f"[GROUP] Auto-grouped on first run: {len(mapping_update)} models")
            groups, evicted = build_groups(models, mapping_update, settings.grouping_custom_names)
        else:
            groups = []
        logger.debug(f"[GROUP] {len(groups)} groups (saved mappings: {bool(saved)})")

    snapshot = QuotaSnapshot(
        timestamp=now,
        connected=connected,
        models=models,
        all_models=all_models,
        groups=groups,
        prompt_credits=decoded.prompt_credits,
        user_info=decoded.user_info,
        source=source,
    )
    return AssemblyResult(snapshot=snapshot, mapping_update=mapping_update, evicted=evicted or None)
