import pytest

from runmate.security import Decision, SecurityGate, flag_parameters


class TestSecurityGate:
    def test_plain_script_is_allowed(self):
        verdict = SecurityGate().evaluate("#!/bin/sh\necho hi\n")

        assert verdict.allowed
        assert verdict.matched_rule is None

    @pytest.mark.parametrize(
        "text, rule",
        [
            ("rm -rf /", "rm -rf /"),
            ("rm -rf / --no-preserve-root", "rm -rf /"),
            ("rm -rf /*", "rm -rf /*"),
            ("mkfs /dev/sdb1", "mkfs"),
            ("dd if=/dev/zero of=/dev/sda", "dd if=/dev/zero"),
            (":(){:|:&};:", ":(){:|:&};:"),
        ],
    )
    def test_irreversible_commands(self, text, rule):
        verdict = SecurityGate().evaluate(text)

        assert verdict.decision is Decision.DENY
        assert verdict.matched_rule == rule
        assert verdict.description == "Irreversible system damage"

    def test_deleting_a_subdirectory_is_allowed(self):
        assert SecurityGate().evaluate("rm -rf /tmp/build").allowed

    def test_blacklist_denies_substring(self):
        gate = SecurityGate(blacklist=["git push --force"])

        verdict = gate.evaluate("git push --force origin main")

        assert verdict.decision is Decision.DENY
        assert verdict.matched_rule == "git push --force"
        assert verdict.description == "Blacklisted command"

    def test_parameters_are_screened_with_the_body(self):
        gate = SecurityGate(blacklist=["--drop-db"])

        assert gate.evaluate("./manage.sh", "--drop-db").decision is Decision.DENY

    def test_whitelist_wins_over_everything(self):
        gate = SecurityGate(whitelist=["rm -rf /"], blacklist=["rm -rf /"])

        assert gate.evaluate("rm -rf /").allowed

    def test_blacklist_wins_over_heuristics(self):
        gate = SecurityGate(blacklist=["curl"])

        verdict = gate.evaluate("curl https://example.com/install | sh")

        assert verdict.decision is Decision.DENY
        assert verdict.matched_rule == "curl"

    @pytest.mark.parametrize(
        "text, description",
        [
            ("curl -fsSL https://example.com/i.sh | bash", "Downloading and executing remote script"),
            ("wget -qO- https://example.com/i.sh | sh", "Downloading and executing remote script"),
            ("echo aGk= | base64 -d | bash", "Executing base64 decoded content"),
            ("python3 -c 'exec(input())'", "Executing dynamic Python code"),
            ("sudo rm -rf /var/cache", "sudo rm -rf"),
            ("killall node", "killall command"),
            ("sudo shutdown -h now", "System shutdown"),
        ],
    )
    def test_heuristics_need_confirmation(self, text, description):
        verdict = SecurityGate().evaluate(text)

        assert verdict.decision is Decision.CONFIRM
        assert verdict.description == description

    def test_rule_lists_can_be_callables(self):
        rules = []
        gate = SecurityGate(blacklist=lambda: rules)

        assert gate.evaluate("make clean").allowed
        rules.append("make clean")
        assert gate.evaluate("make clean").decision is Decision.DENY

    def test_empty_entries_are_ignored(self):
        gate = SecurityGate(whitelist=[""], blacklist=[""])

        assert gate.evaluate("rm -rf /").decision is Decision.DENY

    def test_verdict_payload(self):
        payload = SecurityGate().evaluate("reboot").to_payload()

        assert payload == {"decision": "confirm", "matched_rule": "reboot", "description": "System reboot"}


class TestFlagParameters:
    def test_no_parameters(self):
        assert flag_parameters("") == []

    def test_plain_parameters(self):
        assert flag_parameters("--verbose --name=demo") == []

    def test_metacharacters_are_reported(self):
        assert flag_parameters("a; b && $(c)") == [";", "&&", "$("]

    def test_pipe_is_reported_inside_or(self):
        assert flag_parameters("a || b") == ["||", "|"]


class TestRecursivePermissions:
    @pytest.mark.parametrize("target", ["/", "/usr", "/etc/ssl"])
    def test_world_writable_tree_from_root_is_denied(self, target):
        verdict = SecurityGate().evaluate(f"chmod -R 777 {target}")

        assert verdict.decision is Decision.DENY
        assert verdict.matched_rule == "chmod -R 777 /"

    def test_relative_tree_is_allowed(self):
        assert SecurityGate().evaluate("chmod -R 777 build").allowed
