"""
Reconciliation engine.

Pure functions that compare a source snapshot against a target snapshot and
partition the entities into what has to be added, updated, renamed, deleted
or left alone. Nothing here performs I/O.

Every partition is ordered by correlation key so the result does not depend
on the order of the inputs. When one input holds two entities with the same
key, the later one wins.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Iterable

from ldap_scim_sync.models import (
    SourceUser, SourceGroup, TargetUser, TargetGroup
)

logger = logging.getLogger(__name__)


@dataclass
class UserDiff:
    add: List[TargetUser] = field(default_factory=list)
    delete: List[TargetUser] = field(default_factory=list)
    update: List[TargetUser] = field(default_factory=list)
    equal: List[TargetUser] = field(default_factory=list)


@dataclass
class GroupDiff:
    """
    Group partitions.

    ``rename`` holds target groups correlated by external id whose display
    name changed in the source; each entry carries the target id and the new
    name.
    """

    add: List[TargetGroup] = field(default_factory=list)
    delete: List[TargetGroup] = field(default_factory=list)
    equal: List[TargetGroup] = field(default_factory=list)
    rename: List[TargetGroup] = field(default_factory=list)


@dataclass
class MembershipDiff:
    """Membership edges keyed by group, each list ordered by user key."""

    delete: Dict[str, List[TargetUser]] = field(default_factory=dict)
    equal: Dict[str, List[TargetUser]] = field(default_factory=dict)


def _index(entities: Iterable, description: str) -> Dict:
    index = {}
    for entity in entities:
        key = entity.key
        if not key:
            logger.warning(f"Ignoring {description} without a correlation key: {entity}")
            continue
        if key in index:
            logger.debug(f"Duplicate {description} key '{key}', keeping the last entry")
        index[key] = entity
    return index


def user_needs_update(target: TargetUser, source: SourceUser) -> bool:
    """
    True when the target user's state or names drifted from the source.

    ``active`` and ``suspended`` have opposite polarity, so equal values mean
    the two sides disagree.
    """
    if target.active == source.suspended:
        return True
    return target.given_name != source.given_name or target.family_name != source.family_name


def compute_user_diff(target_users: Iterable[TargetUser], source_users: Iterable[SourceUser]) -> UserDiff:
    """
    Partition users into add/delete/update/equal.

    Args:
        target_users: Users currently in the target
        source_users: Users in the source directory

    Returns:
        UserDiff whose partitions together cover every key seen in either input
    """
    targets = _index(target_users, 'target user')
    sources = _index(source_users, 'source user')

    diff = UserDiff()

    for key in sorted(sources):
        source = sources[key]
        target = targets.get(key)

        if target is None:
            diff.add.append(TargetUser.from_source(source))
        elif user_needs_update(target, source):
            diff.update.append(TargetUser.from_source(source, user_id=target.id))
        else:
            diff.equal.append(target)

    for key in sorted(targets):
        if key not in sources:
            diff.delete.append(targets[key])

    logger.debug(f"User diff: {len(diff.add)} add, {len(diff.update)} update, "
                 f"{len(diff.equal)} equal, {len(diff.delete)} delete")
    return diff


def compute_group_diff(target_groups: Iterable[TargetGroup], source_groups: Iterable[SourceGroup]) -> GroupDiff:
    """
    Partition groups into add/delete/equal/rename.

    A target group correlates with a source group through its external id
    when one is stored, and by display name otherwise.

    Args:
        target_groups: Groups currently in the target
        source_groups: Groups in the source directory

    Returns:
        GroupDiff
    """
    targets = _index(target_groups, 'target group')
    sources = _index(source_groups, 'source group')

    source_key_by_id = {source.id: key for key, source in sources.items() if source.id}

    matched: Dict[str, TargetGroup] = {}
    claimed_targets = set()

    for target_key in sorted(targets):
        target = targets[target_key]
        source_key = source_key_by_id.get(target.external_id) if target.external_id else None
        if source_key is not None and source_key not in matched:
            matched[source_key] = target
            claimed_targets.add(target_key)

    for target_key in sorted(targets):
        if target_key in claimed_targets:
            continue
        if target_key in sources and target_key not in matched:
            matched[target_key] = targets[target_key]
            claimed_targets.add(target_key)

    diff = GroupDiff()

    for source_key in sorted(sources):
        source = sources[source_key]
        target = matched.get(source_key)

        if target is None:
            diff.add.append(TargetGroup.from_source(source))
        elif target.key != source_key:
            renamed = TargetGroup(
                display_name=source.name,
                id=target.id,
                external_id=target.external_id,
                members=list(target.members),
            )
            diff.rename.append(renamed)
        else:
            diff.equal.append(target)

    for target_key in sorted(targets):
        if target_key not in claimed_targets:
            diff.delete.append(targets[target_key])

    logger.debug(f"Group diff: {len(diff.add)} add, {len(diff.rename)} rename, "
                 f"{len(diff.equal)} equal, {len(diff.delete)} delete")
    return diff


def compute_group_membership_diff(
    source_group_members: Dict[str, List[SourceUser]],
    target_group_members: Dict[str, List[TargetUser]]
) -> MembershipDiff:
    """
    Split each target group's members into those the source keeps and those
    it dropped.

    Args:
        source_group_members: Group key to source members
        target_group_members: Group key to target members

    Returns:
        MembershipDiff; members to add are derived by the caller
    """
    diff = MembershipDiff()

    for group_key in sorted(target_group_members):
        source_keys = {user.key for user in source_group_members.get(group_key, [])}
        members = _index(target_group_members[group_key], 'group member')

        for user_key in sorted(members):
            partition = diff.equal if user_key in source_keys else diff.delete
            partition.setdefault(group_key, []).append(members[user_key])

    return diff
