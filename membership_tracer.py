"""
Explains why a subject belongs to a group.

MembershipTracer walks from the target group down to memberships that can be
verified directly: immediate assignments, effective memberships through an
intermediate group, and composite (union / intersection / complement) groups.
The result is a tree of trace nodes which flatten_trace turns into an ordered
list of hops, deepest evidence first and the target group last.
"""
from typing import Dict, Any, List, Optional, Union, FrozenSet
from dataclasses import dataclass
import logging

from membership_queries import GroupMember, GroupRef, MembershipLookup, MembershipQueries, Subject

logger = logging.getLogger(__name__)

MAX_TRACE_DEPTH = 5

# Composite types whose right-hand group can explain membership
RIGHT_BRANCH_TYPES = ("intersection", "union")

COMPOSITE_OPERATORS = {
    "complement": "MINUS",
    "intersection": "AND",
    "union": "OR",
}


@dataclass(frozen=True)
class ImmediateNode:
    group: GroupRef


@dataclass(frozen=True)
class EffectiveNode:
    group: GroupRef
    intermediate_group: Optional[GroupMember] = None
    chain: Optional["TraceNode"] = None
    note: Optional[str] = None
    subject_immediate_group_count: Optional[int] = None
    target_immediate_group_member_count: Optional[int] = None


@dataclass(frozen=True)
class CompositeBranch:
    group: GroupRef
    is_member: bool
    trace: Optional["TraceNode"] = None


@dataclass(frozen=True)
class CompositeNode:
    group: GroupRef
    composite_type: str
    left: CompositeBranch
    right: CompositeBranch


@dataclass(frozen=True)
class MaxDepthReachedNode:
    group_name: str
    depth: int
    description: str


@dataclass(frozen=True)
class CycleDetectedNode:
    group_name: str
    description: str


@dataclass(frozen=True)
class UnknownNode:
    group: GroupRef
    membership_type: str
    description: str


TraceNode = Union[ImmediateNode, EffectiveNode, CompositeNode, MaxDepthReachedNode, CycleDetectedNode, UnknownNode]


class MembershipTracer:
    """Recursive membership explainer. Backend calls are issued one at a time."""

    def __init__(self, queries: MembershipQueries, max_depth: int = MAX_TRACE_DEPTH):
        self._queries = queries
        self.max_depth = max_depth

    def trace(self, subject: Subject, group_name: str, visited: FrozenSet[str] = frozenset(), depth: int = 0,
              membership: Optional[MembershipLookup] = None) -> Optional[TraceNode]:
        """Explain the subject's membership in group_name.

        Args:
            subject: The subject being traced
            group_name: Group to explain at this level
            visited: Groups already on the path from the root; each branch gets its own copy
            depth: Current recursion depth
            membership: Already-fetched membership fact for this group, if the caller has one

        Returns:
            A trace node, or None when the backend reports no membership in group_name
        """
        if depth > self.max_depth:
            logger.info("Trace of %s stopped at depth %d (group %s)", subject.id, depth, group_name)
            return MaxDepthReachedNode(
                group_name=group_name,
                depth=depth,
                description=f"Maximum trace depth of {self.max_depth} reached at {group_name}",
            )
        if group_name in visited:
            logger.info("Cycle detected tracing %s through %s", subject.id, group_name)
            return CycleDetectedNode(
                group_name=group_name,
                description=f"Group {group_name} already appears earlier in this membership path",
            )
        visited = visited | {group_name}

        if membership is None:
            membership = self._queries.get_membership(subject, group_name)
        if membership is None:
            return None

        membership_type = membership.membership_type
        group = membership.group.group
        logger.debug("Tracing %s in %s at depth %d: %s", subject.id, group_name, depth, membership_type)

        if membership_type == "immediate":
            return ImmediateNode(group=group)
        if membership_type == "effective":
            return self._trace_effective(subject, group, visited, depth)
        if membership_type == "composite":
            return self._trace_composite(subject, membership, visited, depth)

        return UnknownNode(
            group=group,
            membership_type=membership_type,
            description=f"Membership type '{membership_type}' is not traced further",
        )

    def _trace_effective(self, subject: Subject, group: GroupRef, visited: FrozenSet[str], depth: int) -> EffectiveNode:
        subject_groups = self._queries.get_immediate_memberships(subject)
        group_members = self._queries.get_immediate_group_members(group.name)

        subject_group_names = set(subject_groups)
        # Only the first intermediate is followed; parallel paths are not enumerated
        intermediate = next((m for m in group_members if m.name in subject_group_names), None)

        chain = None
        if intermediate is not None:
            chain = self.trace(subject, intermediate.name, visited, depth + 1)

        if chain is None:
            logger.info(
                "No direct intermediate between %s and %s (%d subject groups, %d group members)",
                subject.id, group.name, len(subject_groups), len(group_members),
            )
            return EffectiveNode(
                group=group,
                note=(
                    "The subject is a member through one or more nested groups, "
                    "but the exact path could not be resolved from immediate memberships"
                ),
                subject_immediate_group_count=len(subject_groups),
                target_immediate_group_member_count=len(group_members),
            )
        return EffectiveNode(group=group, intermediate_group=intermediate, chain=chain)

    def _trace_composite(self, subject: Subject, membership: MembershipLookup, visited: FrozenSet[str],
                         depth: int) -> TraceNode:
        group = membership.group.group
        composite = membership.group.composite
        if composite is None:
            return UnknownNode(
                group=group,
                membership_type=membership.membership_type,
                description=f"{group.label} is reported as composite but its definition is not available",
            )

        member_of = {m.group_name for m in self._queries.get_subject_memberships(subject)}
        composite_type = composite.composite_type.lower()
        in_left = composite.left_group.name in member_of
        in_right = composite.right_group.name in member_of

        left_trace = None
        right_trace = None
        if in_left:
            left_trace = self.trace(subject, composite.left_group.name, visited, depth + 1)
        if in_right and composite_type in RIGHT_BRANCH_TYPES:
            right_trace = self.trace(subject, composite.right_group.name, visited, depth + 1)

        return CompositeNode(
            group=group,
            composite_type=composite_type,
            left=CompositeBranch(group=composite.left_group, is_member=in_left, trace=left_trace),
            right=CompositeBranch(group=composite.right_group, is_member=in_right, trace=right_trace),
        )


def _group_hop(group: GroupRef, membership_type: str, description: str) -> Dict[str, Any]:
    return {
        "groupName": group.name,
        "groupDisplayName": group.label,
        "membershipType": membership_type,
        "description": description,
    }


def flatten_trace(node: TraceNode, subject_label: str = "Subject") -> List[Dict[str, Any]]:
    """Turn a trace tree into an ordered list of hops, furthest evidence first."""
    if isinstance(node, ImmediateNode):
        return [_group_hop(node.group, "immediate", f"{subject_label} is a direct member of {node.group.label}")]

    if isinstance(node, EffectiveNode):
        if node.chain is None:
            hop = _group_hop(node.group, "effective", f"{subject_label} is an effective member of {node.group.label}")
            hop["note"] = node.note
            hop["subjectImmediateGroupCount"] = node.subject_immediate_group_count
            hop["targetImmediateGroupMemberCount"] = node.target_immediate_group_member_count
            return [hop]
        via = node.intermediate_group
        via_label = via.display_name or via.name
        hop = _group_hop(
            node.group, "effective",
            f"{subject_label} is a member of {node.group.label} via {via_label}",
        )
        hop["viaGroup"] = via.name
        hop["viaGroupDisplayName"] = via_label
        return flatten_trace(node.chain, subject_label) + [hop]

    if isinstance(node, CompositeNode):
        hops = []
        if node.left.trace is not None:
            hops.extend(flatten_trace(node.left.trace, subject_label))
        if node.right.trace is not None and node.composite_type in RIGHT_BRANCH_TYPES:
            hops.extend(flatten_trace(node.right.trace, subject_label))
        operator = COMPOSITE_OPERATORS.get(node.composite_type, node.composite_type.upper())
        summary = _group_hop(
            node.group, "composite",
            f"{subject_label} is a member via composite ({node.left.group.label} {operator} {node.right.group.label})",
        )
        summary["compositeType"] = node.composite_type
        summary["leftGroup"] = {
            "name": node.left.group.name,
            "displayName": node.left.group.label,
            "isMember": node.left.is_member,
        }
        summary["rightGroup"] = {
            "name": node.right.group.name,
            "displayName": node.right.group.label,
            "isMember": node.right.is_member,
        }
        summary["pathThroughLeftGroup"] = node.left.trace is not None
        summary["pathThroughRightGroup"] = node.right.trace is not None
        hops.append(summary)
        return hops

    if isinstance(node, MaxDepthReachedNode):
        return [{
            "groupName": node.group_name,
            "membershipType": "max_depth_reached",
            "depth": node.depth,
            "description": node.description,
        }]

    if isinstance(node, CycleDetectedNode):
        return [{
            "groupName": node.group_name,
            "membershipType": "cycle_detected",
            "description": node.description,
        }]

    if isinstance(node, UnknownNode):
        hop = _group_hop(node.group, "unknown", node.description)
        hop["backendMembershipType"] = node.membership_type
        return [hop]

    raise TypeError(f"Unsupported trace node: {type(node).__name__}")


def summarize_path(subject: Subject, path: List[Dict[str, Any]]) -> str:
    """Arrow-joined chain of display names, starting at the subject."""
    labels = [subject.label]
    for hop in path:
        label = hop.get("groupDisplayName") or hop.get("groupName")
        if label and label != labels[-1]:
            labels.append(label)
    return " → ".join(labels)


def trace_membership(queries: MembershipQueries, group_name: str, subject_id: str,
                     subject_source_id: Optional[str] = None, max_depth: int = MAX_TRACE_DEPTH) -> Dict[str, Any]:
    """Trace how a subject is a member of a group.

    The membership fact is fetched once up front; when the subject is not a member
    the tracer is never started.
    """
    subject = Subject(id=subject_id, source_id=subject_source_id)
    membership = queries.get_membership(subject, group_name)
    if membership is None:
        return {
            "subject": subject_id,
            "group": group_name,
            "isMember": False,
            "message": "Subject is not a member of this group",
        }

    resolved_subject = membership.subject
    tracer = MembershipTracer(queries, max_depth=max_depth)
    node = tracer.trace(resolved_subject, group_name, membership=membership)
    path = flatten_trace(node, resolved_subject.label)

    return {
        "isMember": True,
        "subject": resolved_subject.to_dict(),
        "targetGroup": membership.group.group.to_dict(),
        "membershipType": membership.membership_type,
        "membershipPath": path,
        "pathSummary": summarize_path(resolved_subject, path),
    }
