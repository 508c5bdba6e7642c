"""
Typed read helpers over the Grouper memberships and members services.

The web services answer with parallel arrays (wsMemberships, wsGroups, wsSubjects)
that reference each other by name or id only. Everything in this module turns those
envelopes into the small immutable records below so the tracer never has to dig through
raw response dictionaries.
"""
from typing import Dict, Any, List, Optional, Tuple
from dataclasses import dataclass
import logging

from grouper_utils import GrouperAPIClient, response_section

logger = logging.getLogger(__name__)

MEMBERSHIPS_ENDPOINT = "/web/servicesRest/v4_0_120/memberships"
GET_MEMBERS_ENDPOINT = "/web/servicesRest/v4_0_030/groups"

# Subject source Grouper reserves for members that are themselves groups
GROUP_SUBJECT_SOURCE = "g:gsa"


@dataclass(frozen=True)
class Subject:
    id: str
    source_id: Optional[str] = None
    name: Optional[str] = None

    def lookup(self) -> Dict[str, str]:
        """Subject lookup as the web services expect it."""
        lookup = {"subjectId": self.id}
        if self.source_id:
            lookup["subjectSourceId"] = self.source_id
        return lookup

    @property
    def label(self) -> str:
        return self.name or self.id

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.label, "sourceId": self.source_id}


@dataclass(frozen=True)
class GroupRef:
    name: str
    display_name: Optional[str] = None
    description: Optional[str] = None

    @property
    def label(self) -> str:
        return self.display_name or self.name

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "displayName": self.label, "description": self.description}


@dataclass(frozen=True)
class CompositeDefinition:
    composite_type: str
    left_group: GroupRef
    right_group: GroupRef


@dataclass(frozen=True)
class GroupDetail:
    group: GroupRef
    composite: Optional[CompositeDefinition] = None


@dataclass(frozen=True)
class MembershipRecord:
    group_name: str
    membership_type: str
    group_display_name: Optional[str] = None
    subject_id: Optional[str] = None
    subject_source_id: Optional[str] = None


@dataclass(frozen=True)
class MembershipLookup:
    """One membership fact together with the group and subject detail returned alongside it."""

    record: MembershipRecord
    group: GroupDetail
    subject: Subject

    @property
    def membership_type(self) -> str:
        return self.record.membership_type


@dataclass(frozen=True)
class GroupMember:
    name: str
    display_name: Optional[str] = None


@dataclass(frozen=True)
class MembershipsEnvelope:
    memberships: Tuple[MembershipRecord, ...]
    groups: Dict[str, GroupDetail]
    subjects: Dict[str, Subject]


def _parse_group_ref(raw: Optional[Dict[str, Any]]) -> Optional[GroupRef]:
    if not raw or not raw.get("name"):
        return None
    return GroupRef(
        name=raw["name"],
        display_name=raw.get("displayName"),
        description=raw.get("description"),
    )


def _parse_group_detail(raw: Dict[str, Any]) -> Optional[GroupDetail]:
    group = _parse_group_ref(raw)
    if group is None:
        return None
    detail = raw.get("detail") or {}
    composite = None
    if detail.get("hasComposite") == "T":
        left = _parse_group_ref(detail.get("leftGroup"))
        right = _parse_group_ref(detail.get("rightGroup"))
        if left and right:
            composite = CompositeDefinition(
                composite_type=detail.get("compositeType", ""),
                left_group=left,
                right_group=right,
            )
    return GroupDetail(group=group, composite=composite)


def _parse_membership_record(raw: Dict[str, Any]) -> Optional[MembershipRecord]:
    # Older service versions nest the group under wsGroup instead of flattening it
    ws_group = raw.get("wsGroup") or {}
    group_name = raw.get("groupName") or ws_group.get("name")
    if not group_name:
        return None
    return MembershipRecord(
        group_name=group_name,
        membership_type=raw.get("membershipType", ""),
        group_display_name=raw.get("groupDisplayName") or ws_group.get("displayName"),
        subject_id=raw.get("subjectId"),
        subject_source_id=raw.get("subjectSourceId"),
    )


def parse_memberships_envelope(response: Any) -> MembershipsEnvelope:
    """Map a WsGetMembershipsResults response onto typed records.

    Groups are indexed by name and subjects by id, which is how the parallel
    arrays reference each other.
    """
    results = response_section(response, "WsGetMembershipsResults")

    memberships = []
    for raw in results.get("wsMemberships") or []:
        record = _parse_membership_record(raw)
        if record is not None:
            memberships.append(record)

    groups = {}
    for raw in results.get("wsGroups") or []:
        detail = _parse_group_detail(raw)
        if detail is not None:
            groups.setdefault(detail.group.name, detail)

    subjects = {}
    for raw in results.get("wsSubjects") or []:
        if raw.get("id"):
            subjects.setdefault(raw["id"], Subject(id=raw["id"], source_id=raw.get("sourceId"), name=raw.get("name")))

    return MembershipsEnvelope(memberships=tuple(memberships), groups=groups, subjects=subjects)


def parse_group_members(response: Any) -> Tuple[Optional[GroupRef], List[Dict[str, Any]]]:
    """Return the looked-up group and its raw wsSubjects from a WsGetMembersResults response."""
    results = response_section(response, "WsGetMembersResults").get("results") or []
    if not results:
        return None, []
    first = results[0] or {}
    return _parse_group_ref(first.get("wsGroup")), list(first.get("wsSubjects") or [])


class MembershipQueries:
    """The three membership reads the tracer relies on. Each one is exactly one backend call."""

    def __init__(self, client: GrouperAPIClient):
        self._client = client

    def _get_memberships(self, subject: Subject, group_name: Optional[str] = None,
                         membership_filter: str = "All", include_detail: bool = False) -> MembershipsEnvelope:
        request = {
            "wsSubjectLookups": [subject.lookup()],
            "wsMembershipFilter": membership_filter,
            "includeGroupDetail": "T" if include_detail else "F",
            "includeSubjectDetail": "T" if include_detail else "F",
        }
        if group_name is not None:
            request["wsGroupLookups"] = [{"groupName": group_name}]
        response = self._client.request(MEMBERSHIPS_ENDPOINT, "POST", {"WsRestGetMembershipsRequest": request})
        return parse_memberships_envelope(response)

    def get_membership(self, subject: Subject, group_name: str) -> Optional[MembershipLookup]:
        """Fetch the membership fact for one subject/group pair, or None when the subject is not a member."""
        envelope = self._get_memberships(subject, group_name, include_detail=True)
        record = next((m for m in envelope.memberships if m.group_name == group_name), None)
        if record is None:
            return None

        group = envelope.groups.get(record.group_name) or GroupDetail(
            group=GroupRef(name=record.group_name, display_name=record.group_display_name)
        )
        resolved = envelope.subjects.get(record.subject_id or subject.id)
        if resolved is None:
            resolved = Subject(id=subject.id, source_id=record.subject_source_id or subject.source_id, name=subject.name)
        elif resolved.source_id is None and subject.source_id:
            resolved = Subject(id=resolved.id, source_id=subject.source_id, name=resolved.name)
        return MembershipLookup(record=record, group=group, subject=resolved)

    def get_subject_memberships(self, subject: Subject) -> List[MembershipRecord]:
        """Every membership of the subject, of any type, in backend order."""
        return list(self._get_memberships(subject).memberships)

    def get_immediate_memberships(self, subject: Subject) -> List[str]:
        """Names of the groups the subject is directly assigned to, in backend order."""
        envelope = self._get_memberships(subject, membership_filter="Immediate")
        names = []
        for record in envelope.memberships:
            if record.membership_type not in ("", "immediate"):
                continue
            if record.group_name not in names:
                names.append(record.group_name)
        return names

    def get_immediate_group_members(self, group_name: str) -> List[GroupMember]:
        """Direct members of the group that are themselves groups."""
        response = self._client.request(GET_MEMBERS_ENDPOINT, "POST", {
            "WsRestGetMembersRequest": {
                "wsGroupLookups": [{"groupName": group_name}],
                "memberFilter": "Immediate",
                "includeGroupDetail": "F",
                "includeSubjectDetail": "T",
            }
        })
        _, subjects = parse_group_members(response)

        members = []
        for raw in subjects:
            if raw.get("sourceId") != GROUP_SUBJECT_SOURCE or not raw.get("name"):
                continue
            # For group subjects Grouper reports the system name as name and the display name as description
            members.append(GroupMember(name=raw["name"], display_name=raw.get("description")))
        return members
