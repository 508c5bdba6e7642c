from typing import Dict, Any, Optional
import argparse
import logging
import sys
from fastmcp import FastMCP
import grouper_tools
from grouper_utils import GrouperAPIClient, GrouperConfig, GrouperConfigError, setup_logging

logger = logging.getLogger(__name__)


class GrouperMCPServer:
    """Encapsulated MCP server for Grouper web services operations."""
    def __init__(self, config: GrouperConfig):
        name = "Grouper MCP Server"
        desc = """
            This server exposes Grouper group and membership management through the
            Grouper web services.

            Use trace_membership to explain WHY a subject belongs to a group: it follows
            direct, effective (nested group) and composite (union, intersection,
            complement) memberships and returns the path from the deepest evidence
            to the target group.

            Group names are colon-delimited paths such as "institution:department:groupname".
            Large result sets are paginated: repeat the call with page_number / page_size.
            """
        self.mcp = FastMCP(
                    name = name,
                    instructions = desc
                    )
        self._config = config
        self._api_client = GrouperAPIClient(config)
        self._register_tools()

    def _register_tools(self) -> None:
        """Register all MCP tools."""
        self._register_membership_tools()
        self._register_group_tools()
        self._register_privilege_tools()
        self._register_lookup_tools()

    def _register_membership_tools(self) -> None:
        """Register membership read, change and tracing tools."""

        @self.mcp.tool()
        async def add_group_member(
            group_name: str,
            subject_id: str,
            subject_source_id: Optional[str] = None
        ) -> Dict[str, Any]:
            """
            **Role**: Adds a subject as a direct member of a Grouper group
            **Inputs**:
            - group_name: Full name of the group (e.g., "institution:department:groupname")
            - subject_id: Subject identifier to add (e.g., username or ID)
            - subject_source_id: Optional subject source (e.g., "ldap", "jdbc"). Grouper's default source is used when omitted.
            **Outputs**:
            - status and confirmation message
            """
            return grouper_tools.add_group_member(self._api_client, group_name, subject_id, subject_source_id)

        @self.mcp.tool()
        async def delete_group_member(
            group_name: str,
            subject_id: str,
            subject_source_id: Optional[str] = None
        ) -> Dict[str, Any]:
            """
            **Role**: Removes a subject's direct membership from a Grouper group
            **Inputs**:
            - group_name: Full name of the group
            - subject_id: Subject identifier to remove
            - subject_source_id: Optional subject source
            **Outputs**:
            - status and confirmation message
            """
            return grouper_tools.delete_group_member(self._api_client, group_name, subject_id, subject_source_id)

        @self.mcp.tool()
        async def has_member(
            group_name: str,
            subject_id: str,
            subject_source_id: Optional[str] = None
        ) -> Dict[str, Any]:
            """
            **Role**: Checks whether a subject is a member (of any type) of a Grouper group
            **Inputs**:
            - group_name: Full name of the group
            - subject_id: Subject identifier to check
            - subject_source_id: Optional subject source
            **Outputs**:
            - group, subject and isMember boolean
            """
            return grouper_tools.has_member(self._api_client, group_name, subject_id, subject_source_id)

        @self.mcp.tool()
        async def get_subject_memberships(
            subject_id: str,
            subject_source_id: Optional[str] = None,
            group_name_filter: Optional[str] = None,
            page_number: Optional[int] = None,
            page_size: Optional[int] = None
        ) -> Dict[str, Any]:
            """
            **Role**: Lists every group membership of a subject, with its membership type
            **Inputs**:
            - subject_id: Subject identifier to look up
            - subject_source_id: Optional subject source
            - group_name_filter: Optional case-insensitive substring matched against group name or display name (e.g., "authorized" matches "app:authorized:users")
            - page_number: Page to retrieve (1-indexed) for large result sets
            - page_size: Results per page for large result sets
            **Outputs**:
            - memberships: list of groupName, groupDisplayName, membershipType
            - filter statistics when a filter is applied, pagination when results were chunked
            """
            return grouper_tools.get_subject_memberships(
                self._api_client, subject_id, subject_source_id, group_name_filter, page_number, page_size
            )

        @self.mcp.tool()
        async def trace_membership(
            group_name: str,
            subject_id: str,
            subject_source_id: Optional[str] = None
        ) -> Dict[str, Any]:
            """
            **Role**: Traces how a subject is a member of a group, showing the membership type (immediate, effective, composite) and the path through intermediate groups or composite operations
            **Inputs**:
            - group_name: Full name of the group to trace membership to
            - subject_id: Subject identifier to trace
            - subject_source_id: Optional subject source
            **Outputs**:
            - When not a member: isMember false and a message
            - Otherwise:
              - subject and targetGroup details
              - membershipType: type of the membership in the target group
              - membershipPath: ordered hops, deepest evidence first and the target group last
              - pathSummary: arrow-joined display names from the subject to the target group
            **Note**: Tracing stops after 5 levels of nesting and on cyclic group hierarchies; those hops are marked max_depth_reached / cycle_detected.
            """
            return grouper_tools.trace_subject_membership(self._api_client, group_name, subject_id, subject_source_id)

    def _register_group_tools(self) -> None:
        """Register group lookup and lifecycle tools."""

        @self.mcp.tool()
        async def get_group_members(
            group_name: str,
            page_number: Optional[int] = None,
            page_size: Optional[int] = None
        ) -> Dict[str, Any]:
            """
            **Role**: Lists the members of a Grouper group
            **Inputs**:
            - group_name: Full name of the group
            - page_number: Page to retrieve (1-indexed) for large groups
            - page_size: Results per page for large groups
            **Outputs**:
            - members: list of id, name, description, sourceId
            - pagination metadata when the result was chunked
            """
            return grouper_tools.get_group_members(self._api_client, group_name, page_number, page_size)

        @self.mcp.tool()
        async def get_group_member_count(group_name: str) -> Dict[str, Any]:
            """
            **Role**: Returns the total number of members in a Grouper group
            **Inputs**:
            - group_name: Full name of the group
            **Outputs**:
            - group and memberCount
            """
            return grouper_tools.get_group_member_count(self._api_client, group_name)

        @self.mcp.tool()
        async def find_groups(
            query_filter: str,
            page_number: Optional[int] = None,
            page_size: Optional[int] = None
        ) -> Dict[str, Any]:
            """
            **Role**: Searches for groups by approximate name or stem
            **Inputs**:
            - query_filter: Group name or stem to search for
            - page_number: Page to retrieve (1-indexed) for large result sets
            - page_size: Results per page for large result sets
            **Outputs**:
            - groups: list of name, displayName, description
            """
            return grouper_tools.find_groups(self._api_client, query_filter, page_number, page_size)

        @self.mcp.tool()
        async def create_group(
            group_name: str,
            display_extension: Optional[str] = None,
            description: Optional[str] = None
        ) -> Dict[str, Any]:
            """
            **Role**: Creates a new Grouper group
            **Inputs**:
            - group_name: Full name of the group to create
            - display_extension: Optional display name; defaults to the last segment of group_name
            - description: Optional description
            **Outputs**:
            - status and the saved group
            """
            return grouper_tools.create_group(self._api_client, group_name, display_extension, description)

        @self.mcp.tool()
        async def delete_group(group_name: str) -> Dict[str, Any]:
            """
            **Role**: Deletes a Grouper group
            **Inputs**:
            - group_name: Full name of the group to delete
            **Outputs**:
            - status and confirmation message
            """
            return grouper_tools.delete_group(self._api_client, group_name)

    def _register_privilege_tools(self) -> None:
        """Register privilege tools."""

        @self.mcp.tool()
        async def assign_privilege(
            group_name: str,
            subject_id: str,
            privilege_name: str,
            subject_source_id: Optional[str] = None
        ) -> Dict[str, Any]:
            """
            **Role**: Grants an access privilege to a subject on a group
            **Inputs**:
            - group_name: Full name of the group
            - subject_id: Subject identifier
            - privilege_name: Privilege to assign ("read", "admin", "update", "view", "optin", "optout")
            - subject_source_id: Optional subject source
            **Outputs**:
            - status and confirmation message
            """
            return grouper_tools.assign_privilege(
                self._api_client, group_name, subject_id, privilege_name, subject_source_id
            )

        @self.mcp.tool()
        async def get_group_privileges(
            group_name: str,
            page_number: Optional[int] = None,
            page_size: Optional[int] = None
        ) -> Dict[str, Any]:
            """
            **Role**: Lists access privileges granted on a group
            **Inputs**:
            - group_name: Full name of the group
            - page_number: Page to retrieve (1-indexed) for large result sets
            - page_size: Results per page for large result sets
            **Outputs**:
            - privileges: list of subjectId, privilegeName, isAllowed
            """
            return grouper_tools.get_group_privileges(self._api_client, group_name, page_number, page_size)

    def _register_lookup_tools(self) -> None:
        """Register subject and attribute lookup tools."""

        @self.mcp.tool()
        async def get_subjects(
            search_string: str,
            include_subject_detail: bool = True,
            page_number: Optional[int] = None,
            page_size: Optional[int] = None
        ) -> Dict[str, Any]:
            """
            **Role**: Searches for subjects (users and other entities)
            **Inputs**:
            - search_string: Text to search for
            - include_subject_detail: Include name and description. Set False when only ids are needed. Default True.
            - page_number: Page to retrieve (1-indexed) for large result sets
            - page_size: Results per page for large result sets
            **Outputs**:
            - subjects: list of id, name, description, sourceId
            """
            return grouper_tools.get_subjects(
                self._api_client, search_string, include_subject_detail, page_number, page_size
            )

        @self.mcp.tool()
        async def find_attribute_def_names(
            query_filter: str,
            page_number: Optional[int] = None,
            page_size: Optional[int] = None
        ) -> Dict[str, Any]:
            """
            **Role**: Searches attribute definition names
            **Inputs**:
            - query_filter: Approximate attribute definition name
            - page_number: Page to retrieve (1-indexed) for large result sets
            - page_size: Results per page for large result sets
            **Outputs**:
            - attributeDefNames: list of name, description
            """
            return grouper_tools.find_attribute_def_names(self._api_client, query_filter, page_number, page_size)

    def run(self, transport: str = 'stdio', host: str = '127.0.0.1', port: int = 8000, path: str = '/mcp') -> None:
        """Run the MCP server.

        Args:
            transport: Transport method to use (default: 'stdio')
            host: Host to bind to when using 'streamable-http'
            port: Port to bind to when using 'streamable-http'
            path: URL path for the MCP endpoint when using 'streamable-http'
        """
        logger.info("Starting Grouper MCP server on %s", transport)
        if transport == 'stdio':
            self.mcp.run(transport='stdio')
        else:
            self.mcp.run(transport=transport, host=host, port=port, path=path)


def main() -> None:
    parser = argparse.ArgumentParser(description="Grouper MCP Server")
    parser.add_argument("-grouper_url", type=str, default=None, help="Override GROUPER_BASE_URL")
    parser.add_argument("-grouper_username", type=str, default=None, help="Override GROUPER_USERNAME")
    parser.add_argument("-grouper_password", type=str, default=None, help="Override GROUPER_PASSWORD")
    parser.add_argument("-transport", type=str, default="stdio", choices=["stdio", "streamable-http"],
                        help="MCP transport (default: stdio)")
    parser.add_argument("-host", type=str, default="127.0.0.1", help="Host to bind the server to (default: 127.0.0.1)")
    parser.add_argument("-port", type=int, default=8000, help="Port to bind the server to (default: 8000)")
    parser.add_argument("-path", type=str, default="/mcp", help="URL path for the MCP endpoint (default: /mcp)")
    parser.add_argument("-log_level", type=str, default=None, help="Override LOG_LEVEL")
    args = parser.parse_args()

    setup_logging(args.log_level)
    try:
        config = GrouperConfig.from_env(args.grouper_url, args.grouper_username, args.grouper_password)
    except GrouperConfigError as e:
        logger.error(e.message)
        sys.exit(1)
    server = GrouperMCPServer(config)
    server.run(transport=args.transport, host=args.host, port=args.port, path=args.path)


if __name__ == "__main__":
    main()
