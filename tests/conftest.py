"""Pytest configuration and fixtures for the Grouper MCP tests."""

from typing import Any, Dict, List, Optional

import pytest

from grouper_utils import GrouperAPIError, GrouperConfig
from membership_queries import GROUP_SUBJECT_SOURCE, MembershipQueries


class FakeGrouperClient:
    """In-memory stand-in for GrouperAPIClient that answers membership and member queries.

    Every call is recorded in ``calls`` so tests can assert how many backend
    round trips an operation needed.
    """

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.groups: Dict[str, Dict[str, Any]] = {}
        self.subjects: Dict[str, Dict[str, Any]] = {}
        self.memberships: Dict[str, List[Dict[str, str]]] = {}
        self.group_members: Dict[str, List[str]] = {}
        self.fail_on_call: Optional[int] = None

    def add_group(self, name: str, display_name: Optional[str] = None, composite: Optional[Dict[str, Any]] = None):
        group = {"name": name, "displayName": display_name or name, "description": f"{name} description"}
        if composite:
            group["detail"] = {
                "hasComposite": "T",
                "compositeType": composite["type"],
                "leftGroup": self.group(composite["left"]),
                "rightGroup": self.group(composite["right"]),
            }
        self.groups[name] = group
        return group

    def group(self, name: str) -> Dict[str, Any]:
        if name not in self.groups:
            self.add_group(name)
        return {k: v for k, v in self.groups[name].items() if k != "detail"}

    def add_subject(self, subject_id: str, name: str):
        self.subjects[subject_id] = {"id": subject_id, "name": name, "sourceId": "ldap"}

    def add_membership(self, subject_id: str, group_name: str, membership_type: str):
        self.group(group_name)
        self.memberships.setdefault(subject_id, []).append(
            {"groupName": group_name, "membershipType": membership_type}
        )

    def add_group_member(self, group_name: str, member_group_name: str):
        self.group(group_name)
        self.group(member_group_name)
        self.group_members.setdefault(group_name, []).append(member_group_name)

    def request(self, endpoint: str, method: str = "POST", body: Optional[Dict[str, Any]] = None) -> Any:
        self.calls.append({"endpoint": endpoint, "method": method, "body": body})
        if self.fail_on_call is not None and len(self.calls) == self.fail_on_call:
            raise GrouperAPIError("Grouper API error: {\"errors\": [\"boom\"]}", status=500, raw_body="boom")
        if "WsRestGetMembershipsRequest" in body:
            return self._get_memberships(body["WsRestGetMembershipsRequest"])
        if "WsRestGetMembersRequest" in body:
            return self._get_members(body["WsRestGetMembersRequest"])
        raise AssertionError(f"Unexpected request to {endpoint}: {body}")

    def _get_memberships(self, request: Dict[str, Any]) -> Dict[str, Any]:
        subject_id = request["wsSubjectLookups"][0]["subjectId"]
        records = list(self.memberships.get(subject_id, []))
        if "wsGroupLookups" in request:
            wanted = request["wsGroupLookups"][0]["groupName"]
            records = [r for r in records if r["groupName"] == wanted]
        if request.get("wsMembershipFilter") == "Immediate":
            records = [r for r in records if r["membershipType"] == "immediate"]

        results: Dict[str, Any] = {
            "wsMemberships": [
                {
                    "groupName": r["groupName"],
                    "groupDisplayName": self.groups[r["groupName"]]["displayName"],
                    "membershipType": r["membershipType"],
                    "subjectId": subject_id,
                    "subjectSourceId": "ldap",
                }
                for r in records
            ]
        }
        if request.get("includeGroupDetail") == "T":
            results["wsGroups"] = [self.groups[r["groupName"]] for r in records]
        if request.get("includeSubjectDetail") == "T" and records:
            results["wsSubjects"] = [self.subjects.get(subject_id, {"id": subject_id, "sourceId": "ldap"})]
        return {"WsGetMembershipsResults": results}

    def _get_members(self, request: Dict[str, Any]) -> Dict[str, Any]:
        group_name = request["wsGroupLookups"][0]["groupName"]
        subjects = [
            {
                "id": f"uuid-{name}",
                "sourceId": GROUP_SUBJECT_SOURCE,
                "name": name,
                "description": self.groups[name]["displayName"],
            }
            for name in self.group_members.get(group_name, [])
        ]
        # People are members too; they must never be mistaken for intermediate groups
        subjects.append({"id": "someone", "sourceId": "ldap", "name": "Some One"})
        return {"WsGetMembersResults": {"results": [{"wsGroup": self.group(group_name), "wsSubjects": subjects}]}}


@pytest.fixture
def config() -> GrouperConfig:
    return GrouperConfig(base_url="https://grouper.example.edu", username="svc", password="secret")


@pytest.fixture
def fake_client() -> FakeGrouperClient:
    client = FakeGrouperClient()
    client.add_subject("testuser", "Test User")
    return client


@pytest.fixture
def queries(fake_client: FakeGrouperClient) -> MembershipQueries:
    return MembershipQueries(fake_client)
