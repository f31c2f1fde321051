"""Diff engine for stack orchestration.

Compares the desired resources of a rendered template with recorded stack
state and produces an ordered change set: creates, updates and replaces in
dependency order, then deletes in reverse dependency order.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from intrinsics import iter_references
from stack_opr.graph import CycleError, StackGraph
from stack_opr.state import ResourceState, StackState
from template import DesiredResource

logger = logging.getLogger(__name__)

CREATE = 'create'
UPDATE = 'update'
REPLACE = 'replace'
DELETE = 'delete'

# Symbols used in plan output
ACTION_SYMBOLS = {
    CREATE: '+',
    UPDATE: '~',
    REPLACE: '-/+',
    DELETE: '-',
}


@dataclass
class Change:
    """One planned change to a resource.

    Attributes:
        action: create, update, replace or delete
        name: Logical name
        type: Resource type (desired type, or recorded type for deletes)
        desired: Desired resource (None for deletes)
        previous: Recorded state (None for creates)
        waits_for: Logical names whose changes must succeed first
        refreshes: Replaced or updated resources whose new identifiers this
            update re-resolves
    """
    action: str
    name: str
    type: str
    desired: Optional[DesiredResource] = None
    previous: Optional[ResourceState] = None
    waits_for: list[str] = field(default_factory=list)
    refreshes: list[str] = field(default_factory=list)

    @property
    def properties(self) -> dict:
        return self.desired.properties if self.desired is not None else {}

    @property
    def previous_properties(self) -> dict:
        return self.previous.properties if self.previous is not None else {}

    @property
    def deletion_policy(self) -> str:
        if self.desired is not None:
            return self.desired.deletion_policy
        return self.previous.deletion_policy if self.previous is not None else 'Delete'

    def changed_keys(self) -> list[str]:
        """Top-level property keys that differ between previous and desired."""
        before, after = self.previous_properties, self.properties
        return sorted(k for k in set(before) | set(after) if before.get(k) != after.get(k))

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'action': self.action,
            'name': self.name,
            'type': self.type,
        }
        if self.previous is not None:
            d['physical_id'] = self.previous.physical_id
        if self.action == UPDATE:
            d['changed'] = self.changed_keys()
        if self.action == REPLACE:
            d['previous_type'] = self.previous.type
        if self.waits_for:
            d['waits_for'] = list(self.waits_for)
        if self.refreshes:
            d['refreshes'] = list(self.refreshes)
        return d


@dataclass
class ChangeSet:
    """Ordered changes plus the names left untouched."""
    changes: list[Change] = field(default_factory=list)
    unchanged: list[DesiredResource] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.changes)

    @property
    def names(self) -> list[str]:
        return [c.name for c in self.changes]

    @property
    def unchanged_names(self) -> list[str]:
        return [r.name for r in self.unchanged]

    def get(self, name: str) -> Change:
        """Get the change for a logical name.

        Raises:
            KeyError: If name has no change
        """
        for change in self.changes:
            if change.name == name:
                return change
        raise KeyError(name)

    def counts(self) -> dict[str, int]:
        counts = {CREATE: 0, UPDATE: 0, REPLACE: 0, DELETE: 0}
        for change in self.changes:
            counts[change.action] += 1
        return counts

    def summary(self) -> str:
        c = self.counts()
        return (f"{c[CREATE]} to create, {c[UPDATE]} to update, "
                f"{c[REPLACE]} to replace, {c[DELETE]} to delete")

    def to_dict(self) -> dict:
        return {
            'changes': [c.to_dict() for c in self.changes],
            'unchanged': self.unchanged_names,
            'summary': self.counts(),
        }


def _state_graph(resources: Iterable[ResourceState]) -> Optional[StackGraph]:
    try:
        return StackGraph(resources)
    except CycleError as e:
        logger.warning(f"Recorded state dependencies are cyclic ({e}); deleting in reverse record order")
        return None


def _recorded_dependents(state: StackState, name: str) -> list[str]:
    """Recorded resources that depended on name when they were applied."""
    return [r.name for r in state.resources.values() if name in r.dependencies and r.name != name]


def _delete_changes(state: StackState, names: set[str]) -> list[Change]:
    """Delete changes for names, in reverse dependency order of the state graph."""
    recorded = list(state.resources.values())
    graph = _state_graph(recorded)
    if graph is not None:
        order = graph.destroy_order()
    else:
        order = [r.name for r in reversed(recorded)]

    changes = []
    for name in order:
        if name not in names:
            continue
        previous = state.get_resource(name)
        changes.append(Change(
            action=DELETE,
            name=name,
            type=previous.type,
            previous=previous,
            waits_for=_recorded_dependents(state, name),
        ))
    return changes


def referenced_resources(properties: Any) -> list[tuple[str, Optional[str]]]:
    """(logical name, attribute or None) for every resource reference in a property tree."""
    return [(name, attr) for name, attr, kind in iter_references(properties) if kind != 'Condition']


def compute_changes(desired: Iterable[DesiredResource], state: StackState) -> ChangeSet:
    """Diff desired resources against recorded state.

    Args:
        desired: Desired resources in declaration order
        state: Current stack state

    Returns:
        ChangeSet with creates/updates/replaces in dependency order,
        then deletes in reverse dependency order

    Raises:
        CycleError: If the desired resources depend on each other cyclically
    """
    desired = list(desired)
    graph = StackGraph(desired)
    recorded = state.resources
    changeset = ChangeSet()
    replaced: set[str] = set()

    for name in graph.create_order():
        resource = graph.get_node(name)
        previous = recorded.get(name)
        # Resources reading a replaced resource re-resolve its new identifiers
        stale = [n for n in dict.fromkeys(ref for ref, _attr in referenced_resources(resource.properties))
                 if n in replaced]
        if previous is None:
            action = CREATE
        elif previous.type != resource.type:
            action = REPLACE
            replaced.add(name)
        elif previous.properties != resource.properties or stale:
            action = UPDATE
        else:
            changeset.unchanged.append(resource)
            continue
        changeset.changes.append(Change(
            action=action,
            name=name,
            type=resource.type,
            desired=resource,
            previous=previous,
            waits_for=graph.dependencies(name),
            refreshes=stale if action == UPDATE else [],
        ))

    desired_names = set(graph.names)
    doomed = {name for name in recorded if name not in desired_names}
    changeset.changes.extend(_delete_changes(state, doomed))

    # Only wait on names that actually change in this run
    changing = set(changeset.names)
    for change in changeset.changes:
        change.waits_for = [n for n in change.waits_for if n in changing]

    logger.debug(f"Change set: {changeset.summary()}")
    return changeset


def compute_destroy_changes(state: StackState) -> ChangeSet:
    """Change set deleting every recorded resource (reverse dependency order)."""
    return ChangeSet(changes=_delete_changes(state, set(state.resources)))


def format_plan(changeset: ChangeSet, stack_name: str) -> list[str]:
    """Human-readable plan lines."""
    lines = [f"Stack: {stack_name}", ""]
    if not changeset.has_changes:
        lines.append("No changes. Stack is up to date.")
        return lines

    width = max(len(c.name) for c in changeset.changes)
    for change in changeset.changes:
        symbol = ACTION_SYMBOLS[change.action]
        detail = change.type
        if change.action == UPDATE and change.refreshes and not change.changed_keys():
            detail += f" (re-resolving: {', '.join(change.refreshes)})"
        elif change.action == UPDATE:
            detail += f" (changed: {', '.join(change.changed_keys()) or 'nested values'})"
        elif change.action == REPLACE:
            detail = f"{change.previous.type} -> {change.type}"
        elif change.action == DELETE and change.deletion_policy == 'Retain':
            detail += " (retained, removed from state only)"
        lines.append(f"  {symbol:>3} {change.name:<{width}}  {detail}")
    lines.extend(["", f"Plan: {changeset.summary()}"])
    return lines
