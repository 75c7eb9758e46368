"""System prompt building blocks."""

from datetime import datetime, timezone

from chorus_models import Agent, ServerCustomization, UserPreferences

TOOL_CALL_UNSUPPORTED_PROMPT = """
### Tool Call Limitation
- You are using a model that does not support tool calls.
- When users request tool usage, explain that the current model cannot use tools
  and that they can switch to a model that supports tool calls.
""".strip()


def build_user_system_prompt(
    user_name: str | None,
    preferences: UserPreferences | None = None,
    agent: Agent | None = None,
) -> str:
    """Base prompt: agent persona, user context and response style."""
    prefs = preferences or UserPreferences()
    bot_name = prefs.bot_name or "the assistant"
    sections: list[str] = []

    if agent:
        intro = f"You are {agent.name}"
        if agent.instructions.role:
            intro += f", acting as {agent.instructions.role}"
        sections.append(intro + ".")
        if agent.instructions.system_prompt:
            sections.append(agent.instructions.system_prompt.strip())
    else:
        sections.append(f"You are {bot_name}, a helpful assistant.")

    user_lines = [f"- Current time: {datetime.now(timezone.utc).isoformat(timespec='minutes')}"]
    name = prefs.display_name or user_name
    if name:
        user_lines.append(f"- Name: {name}")
    if prefs.profession:
        user_lines.append(f"- Profession: {prefs.profession}")
    sections.append("### User Context\n" + "\n".join(user_lines))

    if prefs.response_style_example:
        sections.append(
            "### Response Style\nMatch the tone and format of this example:\n"
            + prefs.response_style_example.strip()
        )

    return "\n\n".join(sections)


def build_server_customizations_prompt(customizations: dict[str, ServerCustomization]) -> str:
    """Notes the user attached to the remote tool servers in use."""
    blocks = []
    for c in customizations.values():
        lines = [f"#### {c.server_name}"]
        if c.prompt:
            lines.append(c.prompt.strip())
        for tool_name, note in c.tools.items():
            lines.append(f"- {tool_name}: {note.strip()}")
        if len(lines) > 1:
            blocks.append("\n".join(lines))
    if not blocks:
        return ""
    return "### Tool Usage Guidelines\n" + "\n\n".join(blocks)


def merge_system_prompt(*prompts: str | None | bool) -> str:
    """Join the non-empty prompt sections."""
    return "\n\n".join(p.strip() for p in prompts if isinstance(p, str) and p.strip())
