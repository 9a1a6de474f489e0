"""Unit tests for the terminal front end."""
import io

import cli


class TestFormatEvent:
    """Tests for _format_event."""

    def test_assistant_and_system_messages(self):
        """Should print assistant text plainly and mark system lines."""
        assert cli._format_event({"type": "message", "role": "assistant", "content": "hi"}) == "hi"
        assert cli._format_event({"type": "message", "role": "system", "content": "🔧 shell"}) == "· 🔧 shell"

    def test_user_echo_suppressed(self):
        """Should not echo the user's own messages."""
        assert cli._format_event({"type": "message", "role": "user", "content": "hi"}) is None

    def test_switch_replays_conversation(self):
        """Should print the conversation snapshot on switch."""
        text = cli._format_event(
            {
                "type": "session_switched",
                "session_name": "demo",
                "conversation": [{"role": "user", "content": "q"}, {"role": "assistant", "content": "a"}],
            }
        )
        assert text == "--- demo ---\nyou: q\nassistant: a"

    def test_lifecycle_events(self):
        """Should format failures and closes; ignore the rest."""
        assert cli._format_event({"type": "session_failed", "session_name": "demo", "error": "x"}) == "[demo] error: x"
        assert cli._format_event({"type": "session_closed", "session_name": "demo"}) == "[demo] closed"
        assert cli._format_event({"type": "session_status", "status": "ready"}) is None


class TestHandleCommand:
    """Tests for _handle_command against a coordinator with fake wrappers."""

    def _args(self, temp_dir):
        return cli.build_parser().parse_args(["chat", "--workdir", temp_dir])

    def test_new_switch_and_exit(self, coordinator, fake_wrappers, temp_dir):
        """Should create sessions and switch between them."""
        out = io.StringIO()
        args = self._args(temp_dir)

        assert cli._handle_command(coordinator, "/new first", args, out) is True
        assert cli._handle_command(coordinator, "/new second", args, out) is True
        first_id = fake_wrappers.created[0].session_id
        cli._handle_command(coordinator, f"/switch {first_id}", args, out)

        assert coordinator.get_active_session()["session_name"] == "first"
        assert cli._handle_command(coordinator, "/exit", args, out) is False

    def test_sessions_listing_marks_active(self, coordinator, temp_dir):
        """Should star the active session."""
        out = io.StringIO()
        args = self._args(temp_dir)
        cli._handle_command(coordinator, "/sessions", args, out)
        assert out.getvalue() == "No running sessions.\n"

        cli._handle_command(coordinator, "/new demo", args, out)
        out = io.StringIO()
        cli._handle_command(coordinator, "/sessions", args, out)
        assert out.getvalue().startswith("* ")
        assert "demo" in out.getvalue()

    def test_unknown_command_prints_help(self, coordinator, temp_dir):
        """Should print the command list."""
        out = io.StringIO()
        cli._handle_command(coordinator, "/what", self._args(temp_dir), out)
        assert "/interrupt" in out.getvalue()


class TestListingCommands:
    """Tests for the sessions and recipes subcommands."""

    def test_parser_subcommands(self):
        """Should parse repeatable extension flags."""
        args = cli.build_parser().parse_args(["chat", "--extension", "a", "--extension", "b", "--debug"])
        assert args.extension == ["a", "b"]
        assert args.debug is True
        assert cli.build_parser().parse_args(["sessions", "--agent"]).agent is True

    def test_sessions_lists_store(self, coordinator, store):
        """Should print stored sessions."""
        store.create_or_get_session("demo")
        out = io.StringIO()
        args = cli.build_parser().parse_args(["sessions"])

        assert cli._run_sessions(args, out=out, coordinator=coordinator) == 0
        assert out.getvalue().startswith("demo  ")

    def test_recipes_listing(self, recipes, sample_recipe):
        """Should print recipe ids and names."""
        out = io.StringIO()
        cli._run_recipes(None, out=out, resolver=recipes)
        assert out.getvalue() == "No recipes found.\n"

        recipes.recipe_dir.mkdir(parents=True, exist_ok=True)
        (recipes.recipe_dir / "research.json").write_text('{"name": "Research"}', encoding="utf-8")
        out = io.StringIO()
        cli._run_recipes(None, out=out, resolver=recipes)
        assert out.getvalue() == "research  Research\n"
