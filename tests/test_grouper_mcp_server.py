"""Tests for the GrouperMCPServer shell."""

from unittest.mock import patch

import pytest
from fastmcp import Client

from grouper_mcp_server import GrouperMCPServer, main

EXPECTED_TOOLS = {
    "add_group_member",
    "delete_group_member",
    "has_member",
    "get_subject_memberships",
    "trace_membership",
    "get_group_members",
    "get_group_member_count",
    "find_groups",
    "create_group",
    "delete_group",
    "assign_privilege",
    "get_group_privileges",
    "get_subjects",
    "find_attribute_def_names",
}


@pytest.fixture
def server(config, fake_client) -> GrouperMCPServer:
    server = GrouperMCPServer(config)
    server._api_client = fake_client
    return server


class TestGrouperMCPServer:
    """Tests for server construction and startup."""

    def test_server_uses_given_configuration(self, config):
        server = GrouperMCPServer(config)

        assert server.mcp.name == "Grouper MCP Server"
        assert server._api_client.base_url == "https://grouper.example.edu"

    def test_run_defaults_to_stdio(self, config):
        server = GrouperMCPServer(config)

        with patch.object(server.mcp, "run") as mock_run:
            server.run()

        mock_run.assert_called_once_with(transport="stdio")

    def test_main_exits_without_credentials(self, monkeypatch):
        monkeypatch.delenv("GROUPER_USERNAME", raising=False)
        monkeypatch.delenv("GROUPER_PASSWORD", raising=False)
        monkeypatch.setattr("sys.argv", ["grouper_mcp_server.py"])

        with patch("grouper_utils.load_dotenv"), patch("grouper_mcp_server.setup_logging"):
            with pytest.raises(SystemExit) as exc_info:
                main()

        assert exc_info.value.code == 1


class TestGrouperMCPTools:
    """Tests that call the registered tools through an in-memory MCP client."""

    @pytest.mark.asyncio
    async def test_all_tools_are_registered(self, server):
        async with Client(server.mcp) as client:
            tools = await client.list_tools()

        assert {tool.name for tool in tools} == EXPECTED_TOOLS

    @pytest.mark.asyncio
    async def test_trace_membership_returns_path(self, server, fake_client):
        fake_client.add_group("app:staff", "Staff")
        fake_client.add_membership("testuser", "app:staff", "immediate")

        async with Client(server.mcp) as client:
            result = await client.call_tool(
                "trace_membership", {"group_name": "app:staff", "subject_id": "testuser"}
            )

        assert result.is_error is False
        assert result.structured_content["isMember"] is True
        assert result.structured_content["membershipType"] == "immediate"
        assert result.structured_content["membershipPath"][0]["groupName"] == "app:staff"
        request = fake_client.calls[0]["body"]["WsRestGetMembershipsRequest"]
        assert request["wsGroupLookups"] == [{"groupName": "app:staff"}]
        assert request["wsSubjectLookups"] == [{"subjectId": "testuser"}]

    @pytest.mark.asyncio
    async def test_backend_failure_is_flagged_as_error(self, server, fake_client):
        fake_client.fail_on_call = 1

        async with Client(server.mcp) as client:
            result = await client.call_tool(
                "trace_membership",
                {"group_name": "app:staff", "subject_id": "testuser"},
                raise_on_error=False,
            )

        assert result.is_error is True
        assert result.content[0].text.startswith("Error tracing membership: Grouper API error")

    @pytest.mark.asyncio
    async def test_get_group_members_passes_paging_arguments(self, server, fake_client):
        fake_client.add_group_member("app:staff", "app:nested")

        async with Client(server.mcp) as client:
            result = await client.call_tool(
                "get_group_members", {"group_name": "app:staff", "page_number": 1, "page_size": 50}
            )

        assert result.is_error is False
        assert result.structured_content["group"] == "app:staff"
        assert result.structured_content["totalMembers"] == 2
        assert [m["id"] for m in result.structured_content["members"]] == ["uuid-app:nested", "someone"]
        request = fake_client.calls[0]["body"]["WsRestGetMembersRequest"]
        assert request["wsGroupLookups"] == [{"groupName": "app:staff"}]
