import json
import unittest

from sandbox_orchestrator.routing import (
    KIND_CODE_BLOCK,
    KIND_PLAIN_TEXT,
    KIND_SHELL_COMMAND,
    KIND_TOOL_CALL,
    ToolCall,
    classify,
    code_block_command,
    parse_tool_calls,
)
from sandbox_orchestrator.routing.tool_calls import (
    FencedJsonParser,
    KeywordInferenceParser,
    RegexJsonParser,
    StrictJsonParser,
)


class TestClassifier(unittest.TestCase):
    def test_explicit_run_the_command(self):
        result = classify("Please run the command `echo hi` for me")
        self.assertEqual(result.kind, KIND_SHELL_COMMAND)
        self.assertEqual(result.command, "echo hi")
        self.assertTrue(result.requires_sandbox)

    def test_leading_shell_verb(self):
        self.assertEqual(classify("ls -la /tmp").command, "ls -la /tmp")
        self.assertEqual(classify("$ uname -a").command, "uname -a")
        self.assertEqual(classify("pwd").kind, KIND_SHELL_COMMAND)

    def test_prose_starting_with_verb_is_plain_text(self):
        self.assertEqual(classify("find me a good restaurant nearby").kind, KIND_PLAIN_TEXT)
        self.assertEqual(classify("echo what does that mean?").kind, KIND_PLAIN_TEXT)
        self.assertFalse(classify("hello there").requires_sandbox)

    def test_sentences_ending_with_period_are_plain_text(self):
        for text in ("go to the store.", "make it shorter please.", "find the v2.0 release notes.", "go home"):
            with self.subTest(text=text):
                self.assertEqual(classify(text).kind, KIND_PLAIN_TEXT)

    def test_shell_shaped_arguments(self):
        self.assertEqual(classify("cat notes.txt").command, "cat notes.txt")
        self.assertEqual(classify("ls .").kind, KIND_SHELL_COMMAND)
        self.assertEqual(classify("git status").command, "git status")
        self.assertEqual(classify("pip install requests").kind, KIND_SHELL_COMMAND)
        self.assertEqual(classify("grep -r TODO").kind, KIND_SHELL_COMMAND)
        self.assertEqual(classify("git me a coffee").kind, KIND_PLAIN_TEXT)

    def test_fenced_code_block(self):
        result = classify("Try this:\n```python\nprint(1 + 1)\n```")
        self.assertEqual(result.kind, KIND_CODE_BLOCK)
        self.assertEqual(result.language, "python")
        self.assertEqual(result.code, "print(1 + 1)")

    def test_shell_command_wins_over_code_block(self):
        text = "run the command `ls`\n```bash\necho ignored\n```"
        result = classify(text)
        self.assertEqual(result.kind, KIND_SHELL_COMMAND)
        self.assertEqual(result.command, "ls")

    def test_structured_tool_call(self):
        result = classify('{"server": "github", "tool": "search_repos", "arguments": {"q": "mcp"}}')
        self.assertEqual(result.kind, KIND_TOOL_CALL)
        self.assertEqual(result.tool_calls, (ToolCall("github", "search_repos", {"q": "mcp"}),))

    def test_code_block_command_uses_runner(self):
        command = code_block_command("python", "print('hi')")
        self.assertTrue(command.startswith("python3 <<'SNIPPET_EOF'\n"))
        self.assertIn("print('hi')", command)
        self.assertEqual(code_block_command("js", "1").split()[0], "node")
        self.assertIsNone(code_block_command("rust", "fn main() {}"))

    def test_code_block_command_avoids_delimiter_collision(self):
        command = code_block_command("bash", "echo SNIPPET_EOF")
        self.assertTrue(command.startswith("bash <<'SNIPPET_EOF_X'"))


class TestToolCallParsing(unittest.TestCase):
    payload = {"tool_calls": [{"server": "github", "tool": "list_issues", "arguments": {"repo": "a/b"}}]}

    def test_fenced_json_matches_strict_json(self):
        strict = parse_tool_calls(json.dumps(self.payload))
        fenced = parse_tool_calls("Sure:\n```json\n" + json.dumps(self.payload, indent=2) + "\n```")
        self.assertIsNotNone(strict)
        self.assertEqual(strict, fenced)

    def test_regex_extraction_from_prose(self):
        text = "I will call it now " + json.dumps(self.payload) + " and report back."
        self.assertIsNone(StrictJsonParser().try_handle(text))
        self.assertIsNone(FencedJsonParser().try_handle(text))
        self.assertEqual(RegexJsonParser().try_handle(text), parse_tool_calls(json.dumps(self.payload)))

    def test_openai_function_shape_with_qualified_name(self):
        text = json.dumps(
            {"tool_calls": [{"function": {"name": "github.create_issue", "arguments": '{"title": "x"}'}}]}
        )
        self.assertEqual(parse_tool_calls(text), [ToolCall("github", "create_issue", {"title": "x"})])

    def test_keyword_inference(self):
        calls = KeywordInferenceParser().try_handle(
            'Use the search_code tool on the github MCP server with {"query": "todo"}'
        )
        self.assertEqual(calls, [ToolCall("github", "search_code", {"query": "todo"})])

    def test_unparseable_text_is_plain(self):
        self.assertIsNone(parse_tool_calls("just a {broken json"))
        self.assertIsNone(parse_tool_calls(""))
        self.assertEqual(classify("tell me about {json} please").kind, KIND_PLAIN_TEXT)


if __name__ == "__main__":
    unittest.main()
