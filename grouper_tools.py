"""
Handlers behind the Grouper MCP tools.

Each handler takes the API client plus the tool arguments and returns a
JSON-serialisable dict. Grouper failures are raised as FastMCP ``ToolError``
so the host sees them as failed tool calls.
"""
from typing import Dict, Any, List, Optional, Callable
import functools
import logging
import urllib.parse
from fastmcp.exceptions import ToolError

from grouper_utils import GrouperAPIClient, GrouperError, ResultChunker, response_section
from membership_queries import GET_MEMBERS_ENDPOINT, MembershipQueries, Subject
from membership_tracer import MAX_TRACE_DEPTH, trace_membership

logger = logging.getLogger(__name__)

ADD_MEMBER_ENDPOINT = "/web/servicesRest/v4_0_020/groups"
DELETE_MEMBER_ENDPOINT = "/web/servicesRest/v4_0_220/groups"
FIND_GROUPS_ENDPOINT = "/web/servicesRest/v4_0_040/groups"
GROUP_SAVE_ENDPOINT = "/web/servicesRest/v4_0_050/groups"
GROUP_DELETE_ENDPOINT = "/web/servicesRest/v4_0_060/groups"
ASSIGN_PRIVILEGE_ENDPOINT = "/web/servicesRest/v4_0_100/grouperPrivileges"
GET_PRIVILEGES_ENDPOINT = "/web/servicesRest/v4_0_110/grouperPrivileges"
FIND_ATTRIBUTE_DEF_NAMES_ENDPOINT = "/web/servicesRest/v4_0_270/attributeDefNames"
GET_SUBJECTS_ENDPOINT = "/web/servicesRest/v4_0_280/subjects"
HAS_MEMBER_ENDPOINT = "/web/servicesRest/v4_0_290/groups/{group}/members"

# Unfiltered membership listings above this size get a hint to use group_name_filter
LARGE_MEMBERSHIP_COUNT = 50

_chunker = ResultChunker()


def reports_errors(prefix: str = "Error") -> Callable:
    """Re-raise GrouperError from a handler as a ToolError carrying the prefixed message."""
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except GrouperError as e:
                logger.error("%s failed: %s", func.__name__, e.message)
                raise ToolError(f"{prefix}: {e.message}") from e
        return wrapper
    return decorator


def _with_pagination(response: Dict[str, Any], page_info: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if page_info:
        response["pagination"] = page_info
    return response


#######################
## Membership changes

@reports_errors()
def add_group_member(client: GrouperAPIClient, group_name: str, subject_id: str,
                     subject_source_id: Optional[str] = None) -> Dict[str, Any]:
    subject = Subject(id=subject_id, source_id=subject_source_id)
    client.request(ADD_MEMBER_ENDPOINT, "POST", {
        "WsRestAddMemberRequest": {
            "wsGroupLookup": {"groupName": group_name},
            "subjectLookups": [subject.lookup()],
        }
    })
    return {"status": "success", "message": f"Added subject '{subject_id}' to group '{group_name}'."}


@reports_errors()
def delete_group_member(client: GrouperAPIClient, group_name: str, subject_id: str,
                        subject_source_id: Optional[str] = None) -> Dict[str, Any]:
    subject = Subject(id=subject_id, source_id=subject_source_id)
    client.request(DELETE_MEMBER_ENDPOINT, "POST", {
        "WsRestDeleteMemberRequest": {
            "wsGroupLookup": {"groupName": group_name},
            "subjectLookups": [subject.lookup()],
        }
    })
    return {"status": "success", "message": f"Removed subject '{subject_id}' from group '{group_name}'."}


#######################
## Group reads

@reports_errors()
def get_group_members(client: GrouperAPIClient, group_name: str, page_number: Optional[int] = None,
                      page_size: Optional[int] = None) -> Dict[str, Any]:
    result = client.request(GET_MEMBERS_ENDPOINT, "POST", {
        "WsRestGetMembersRequest": {
            "wsGroupLookups": [{"groupName": group_name}],
            "includeGroupDetail": "T",
            "includeSubjectDetail": "T",
            "subjectAttributeNames": ["name", "description", "loginid", "email"],
        }
    })
    results = response_section(result, "WsGetMembersResults").get("results") or []
    first = results[0] if results else {}
    members = [
        {
            "id": s.get("id"),
            "name": s.get("name"),
            "description": s.get("description"),
            "sourceId": s.get("sourceId"),
        }
        for s in first.get("wsSubjects") or []
    ]

    chunked = _chunker.chunk(members, page_number, page_size, "members")
    response = {
        "group": (first.get("wsGroup") or {}).get("name", group_name),
        "totalMembers": chunked.total_items,
        "memberCount": len(chunked.items),
        "members": chunked.items,
    }
    return _with_pagination(response, chunked.page_info)


@reports_errors()
def get_group_member_count(client: GrouperAPIClient, group_name: str) -> Dict[str, Any]:
    result = client.request(GET_MEMBERS_ENDPOINT, "POST", {
        "WsRestGetMembersRequest": {
            "wsGroupLookups": [{"groupName": group_name}],
            "includeSubjectDetail": "F",
        }
    })
    results = response_section(result, "WsGetMembersResults").get("results") or []
    first = results[0] if results else {}
    return {
        "group": (first.get("wsGroup") or {}).get("name", group_name),
        "memberCount": len(first.get("wsSubjects") or []),
    }


@reports_errors()
def find_groups(client: GrouperAPIClient, query_filter: str, page_number: Optional[int] = None,
                page_size: Optional[int] = None) -> Dict[str, Any]:
    result = client.request(FIND_GROUPS_ENDPOINT, "POST", {
        "WsRestFindGroupsRequest": {
            "wsQueryFilter": {
                "queryFilterType": "FIND_BY_GROUP_NAME_APPROXIMATE",
                "groupName": query_filter,
            },
            "includeGroupDetail": "T",
        }
    })
    groups = [
        {"name": g.get("name"), "displayName": g.get("displayName"), "description": g.get("description")}
        for g in response_section(result, "WsFindGroupsResults").get("groupResults") or []
    ]

    chunked = _chunker.chunk(groups, page_number, page_size, "groups")
    response = {
        "totalGroups": chunked.total_items,
        "groupCount": len(chunked.items),
        "groups": chunked.items,
    }
    return _with_pagination(response, chunked.page_info)


#######################
## Group lifecycle

@reports_errors()
def create_group(client: GrouperAPIClient, group_name: str, display_extension: Optional[str] = None,
                 description: Optional[str] = None) -> Dict[str, Any]:
    result = client.request(GROUP_SAVE_ENDPOINT, "POST", {
        "WsRestGroupSaveRequest": {
            "wsGroupToSaves": [{
                "wsGroup": {
                    "name": group_name,
                    "displayExtension": display_extension or group_name.split(":")[-1],
                    "description": description or "",
                }
            }]
        }
    })
    results = response_section(result, "WsGroupSaveResults").get("results") or []
    saved = (results[0] if results else {}).get("wsGroup") or {}
    return {
        "status": "success",
        "group": {
            "name": saved.get("name", group_name),
            "displayName": saved.get("displayName"),
            "description": saved.get("description"),
        },
    }


@reports_errors()
def delete_group(client: GrouperAPIClient, group_name: str) -> Dict[str, Any]:
    client.request(GROUP_DELETE_ENDPOINT, "POST", {
        "WsRestGroupDeleteRequest": {
            "wsGroupLookups": [{"groupName": group_name}],
        }
    })
    return {"status": "success", "message": f"Group '{group_name}' deleted."}


#######################
## Privileges

@reports_errors()
def assign_privilege(client: GrouperAPIClient, group_name: str, subject_id: str, privilege_name: str,
                     subject_source_id: Optional[str] = None) -> Dict[str, Any]:
    request = {
        "groupName": group_name,
        "subjectId": subject_id,
        "privilegeName": privilege_name,
        "privilegeType": "access",
        "allowed": "T",
    }
    if subject_source_id:
        request["subjectSourceId"] = subject_source_id
    client.request(ASSIGN_PRIVILEGE_ENDPOINT, "POST", {"WsRestAssignGrouperPrivilegesLiteRequest": request})
    return {
        "status": "success",
        "message": f"Assigned privilege '{privilege_name}' to subject '{subject_id}' on group '{group_name}'.",
    }


@reports_errors()
def get_group_privileges(client: GrouperAPIClient, group_name: str, page_number: Optional[int] = None,
                         page_size: Optional[int] = None) -> Dict[str, Any]:
    result = client.request(GET_PRIVILEGES_ENDPOINT, "POST", {
        "WsRestGetGrouperPrivilegesLiteRequest": {
            "groupName": group_name,
            "privilegeType": "access",
            "includeGroupDetail": "T",
            "includeSubjectDetail": "T",
        }
    })
    raw = response_section(result, "WsGetGrouperPrivilegesLiteResult").get("privilegeResults") or []
    privileges = [
        {
            "subjectId": (p.get("wsSubject") or {}).get("id"),
            "privilegeName": p.get("privilegeName"),
            "isAllowed": p.get("allowed") == "T",
        }
        for p in raw
    ]

    chunked = _chunker.chunk(privileges, page_number, page_size, "privileges")
    group = ((raw[0].get("wsGroup") or {}).get("name") if raw else None) or group_name
    response = {
        "group": group,
        "totalPrivileges": chunked.total_items,
        "privilegeCount": len(chunked.items),
        "privileges": chunked.items,
    }
    return _with_pagination(response, chunked.page_info)


#######################
## Attributes and subjects

@reports_errors()
def find_attribute_def_names(client: GrouperAPIClient, query_filter: str, page_number: Optional[int] = None,
                             page_size: Optional[int] = None) -> Dict[str, Any]:
    result = client.request(FIND_ATTRIBUTE_DEF_NAMES_ENDPOINT, "POST", {
        "WsRestFindAttributeDefNamesRequest": {
            "wsQueryFilter": {
                "queryFilterType": "FIND_BY_ATTRIBUTE_DEF_NAME_APPROXIMATE",
                "attributeDefName": query_filter,
            },
            "includeAttributeDefNameDetail": "T",
        }
    })
    names = [
        {"name": a.get("name"), "description": a.get("description")}
        for a in response_section(result, "WsFindAttributeDefNamesResults").get("attributeDefNameResults") or []
    ]

    chunked = _chunker.chunk(names, page_number, page_size, "attribute definitions")
    response = {
        "totalAttributeDefNames": chunked.total_items,
        "attributeDefNameCount": len(chunked.items),
        "attributeDefNames": chunked.items,
    }
    return _with_pagination(response, chunked.page_info)


@reports_errors()
def get_subjects(client: GrouperAPIClient, search_string: str, include_subject_detail: bool = True,
                 page_number: Optional[int] = None, page_size: Optional[int] = None) -> Dict[str, Any]:
    result = client.request(GET_SUBJECTS_ENDPOINT, "POST", {
        "WsRestGetSubjectsRequest": {
            "searchString": search_string,
            "includeSubjectDetail": "T" if include_subject_detail else "F",
        }
    })
    subjects = [
        {
            "id": s.get("id"),
            "name": s.get("name"),
            "description": s.get("description"),
            "sourceId": s.get("sourceId"),
        }
        for s in response_section(result, "WsGetSubjectsResults").get("wsSubjects") or []
    ]

    chunked = _chunker.chunk(subjects, page_number, page_size, "subjects")
    response = {
        "totalSubjects": chunked.total_items,
        "subjectCount": len(chunked.items),
        "subjects": chunked.items,
    }
    return _with_pagination(response, chunked.page_info)


#######################
## Membership reads

@reports_errors()
def has_member(client: GrouperAPIClient, group_name: str, subject_id: str,
               subject_source_id: Optional[str] = None) -> Dict[str, Any]:
    subject = Subject(id=subject_id, source_id=subject_source_id)
    endpoint = HAS_MEMBER_ENDPOINT.format(group=urllib.parse.quote(group_name, safe=""))
    result = client.request(endpoint, "POST", {
        "WsRestHasMemberRequest": {
            "subjectLookups": [subject.lookup()],
            "includeGroupDetail": "T",
            "includeSubjectDetail": "T",
        }
    })
    has_member_results = response_section(result, "WsHasMemberResults")
    results = has_member_results.get("results") or []
    member_result = results[0] if results else {}
    result_code = (member_result.get("resultMetadata") or {}).get("resultCode")
    return {
        "group": (has_member_results.get("wsGroup") or {}).get("name") or group_name,
        "subject": (member_result.get("wsSubject") or {}).get("id") or subject_id,
        "isMember": result_code == "IS_MEMBER",
    }


@reports_errors()
def get_subject_memberships(client: GrouperAPIClient, subject_id: str, subject_source_id: Optional[str] = None,
                            group_name_filter: Optional[str] = None, page_number: Optional[int] = None,
                            page_size: Optional[int] = None) -> Dict[str, Any]:
    subject = Subject(id=subject_id, source_id=subject_source_id)
    records = MembershipQueries(client).get_subject_memberships(subject)
    memberships: List[Dict[str, Any]] = [
        {
            "groupName": r.group_name,
            "groupDisplayName": r.group_display_name,
            "membershipType": r.membership_type,
        }
        for r in records
    ]

    total_before_filter = len(memberships)
    if group_name_filter:
        needle = group_name_filter.lower()
        memberships = [
            m for m in memberships
            if needle in (m["groupName"] or "").lower() or needle in (m["groupDisplayName"] or "").lower()
        ]

    chunked = _chunker.chunk(memberships, page_number, page_size, "memberships")
    response = {
        "subject": subject_id,
        "totalMemberships": chunked.total_items,
        "membershipCount": len(chunked.items),
        "memberships": chunked.items,
    }
    if group_name_filter:
        response["filterApplied"] = group_name_filter
        response["totalBeforeFilter"] = total_before_filter
        response["filteredOut"] = total_before_filter - chunked.total_items
    _with_pagination(response, chunked.page_info)
    if not group_name_filter and chunked.total_items > LARGE_MEMBERSHIP_COUNT:
        response["suggestion"] = (
            f"Large result set ({chunked.total_items} memberships). Consider using the group_name_filter "
            f"parameter to narrow down results by group name substring."
        )
    return response


@reports_errors("Error tracing membership")
def trace_subject_membership(client: GrouperAPIClient, group_name: str, subject_id: str,
                             subject_source_id: Optional[str] = None,
                             max_depth: int = MAX_TRACE_DEPTH) -> Dict[str, Any]:
    return trace_membership(MembershipQueries(client), group_name, subject_id, subject_source_id, max_depth)
