from typing import Iterable, Sequence

from shopfloor.models.entities import ExpansionState, Project


def item_ids_of(projects: Iterable[Project], project_id: str) -> frozenset:
    return frozenset(item.id for p in projects if p.id == project_id for item in p.items)


def toggle_project(state: ExpansionState, project_id: str, projects: Sequence[Project]) -> ExpansionState:
    """Flip a project; collapsing it also collapses every item under it."""
    if project_id in state.expanded_project_ids:
        return ExpansionState(
            expanded_project_ids=state.expanded_project_ids - {project_id},
            expanded_item_ids=state.expanded_item_ids - item_ids_of(projects, project_id),
        )
    return ExpansionState(
        expanded_project_ids=state.expanded_project_ids | {project_id},
        expanded_item_ids=state.expanded_item_ids,
    )


def toggle_item(state: ExpansionState, item_id: str) -> ExpansionState:
    """Flip an item. Project expansion is never touched."""
    if item_id in state.expanded_item_ids:
        items = state.expanded_item_ids - {item_id}
    else:
        items = state.expanded_item_ids | {item_id}
    return ExpansionState(expanded_project_ids=state.expanded_project_ids, expanded_item_ids=items)


def expand_all_projects(state: ExpansionState, projects: Sequence[Project]) -> ExpansionState:
    return ExpansionState(
        expanded_project_ids=frozenset(p.id for p in projects),
        expanded_item_ids=state.expanded_item_ids,
    )


def collapse_all_projects(state: ExpansionState) -> ExpansionState:
    return ExpansionState()


def expand_all_items(state: ExpansionState, projects: Sequence[Project]) -> ExpansionState:
    return ExpansionState(
        expanded_project_ids=state.expanded_project_ids,
        expanded_item_ids=frozenset(item.id for p in projects for item in p.items),
    )


def collapse_all_items(state: ExpansionState) -> ExpansionState:
    return ExpansionState(expanded_project_ids=state.expanded_project_ids)


def prune_orphans(state: ExpansionState, projects: Sequence[Project]) -> ExpansionState:
    """Drop expanded items whose project is collapsed (e.g. state rebuilt from query params)."""
    allowed = frozenset(
        item.id for p in projects if p.id in state.expanded_project_ids for item in p.items
    )
    return ExpansionState(
        expanded_project_ids=state.expanded_project_ids,
        expanded_item_ids=state.expanded_item_ids & allowed,
    )
