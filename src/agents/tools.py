from dataclasses import dataclass

PERMISSION_PROMPT_TOOL = "mcp__flotilla-auth__handle_permission"


@dataclass(frozen=True)
class AITool:
    name: str
    command: str
    code_args: tuple[str, ...] = ()
    summary_args: tuple[str, ...] = ()
    allowed_tools: tuple[str, ...] = ()
    disallowed_tools: tuple[str, ...] = ()
    supports_permission_prompt: bool = False

    def build_command(self, prompt: str, base_args: tuple[str, ...], mcp_config_path: str | None = None) -> list[str]:
        argv = [self.command, *base_args, prompt]
        if self.allowed_tools:
            argv += ["--allowedTools", *self.allowed_tools]
        if self.disallowed_tools:
            argv += ["--disallowedTools", *self.disallowed_tools]
        if self.supports_permission_prompt and mcp_config_path:
            argv += ["--mcp-config", mcp_config_path, "--permission-prompt-tool", PERMISSION_PROMPT_TOOL]
        return argv

    def code_command(self, prompt: str, mcp_config_path: str | None = None) -> list[str]:
        return self.build_command(prompt, self.code_args, mcp_config_path)

    def summary_command(self, prompt: str) -> list[str]:
        # Tools without a dedicated summary mode fall back to their code args.
        return self.build_command(prompt, self.summary_args or self.code_args)


DEFAULT_TOOLS: tuple[AITool, ...] = (
    AITool(
        name="claude",
        command="claude",
        code_args=("--print", "--permission-mode", "acceptEdits", "--setting-sources", "user"),
        summary_args=("--print", "--setting-sources", "user"),
        allowed_tools=(
            "Edit",
            "List(*)",
            "Read(*)",
            "Bash(tree:*)",
            "Bash(cat:*)",
            "Bash(find:*)",
            "Bash(wc:*)",
            "Bash(grep:*)",
        ),
        disallowed_tools=("WebFetch", "Task"),
        supports_permission_prompt=True,
    ),
    AITool(name="codex", command="codex", code_args=("exec", "--full-auto")),
    AITool(name="qwen", command="qwen", code_args=("--approval-mode", "auto-edit", "-p")),
    AITool(name="gemini", command="gemini", code_args=("--approval-mode", "auto_edit")),
)


def tool_by_name(name: str, tools: tuple[AITool, ...] = DEFAULT_TOOLS) -> AITool:
    for tool in tools:
        if tool.name == name:
            return tool
    known = ", ".join(t.name for t in tools)
    raise ValueError(f"Unknown AI tool: {name} (known: {known})")
