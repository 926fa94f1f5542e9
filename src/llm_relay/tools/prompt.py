"""System prompt injection for prompt-mode tool use.

When tools are not sent as native function definitions, they are
described in the system prompt and the model is asked to answer with a
``<tool_use>`` block, which :class:`~llm_relay.llm.tag_scanner.ToolTagScanner`
then extracts.
"""

from __future__ import annotations

import json
from typing import Iterable

from llm_relay.types import ToolDescriptor, ToolResponse

_TOOL_USE_INSTRUCTIONS = """\
In this environment you have access to a set of tools you can use to answer \
the user's question. You can use one tool per message and will receive the \
result of that tool use in the user's response. Use tools step by step, each \
tool use informed by the result of the previous one.

## Tool Use Formatting

Tool use is formatted with XML-style tags. The tool name goes in the <name> \
tag and the arguments, as a JSON object, go in the <arguments> tag:

<tool_use>
  <name>{tool_name}</name>
  <arguments>{json_arguments}</arguments>
</tool_use>

The result comes back as:

<tool_use_result>
  <name>{tool_name}</name>
  <result>{result}</result>
</tool_use_result>

Always use the exact tool names listed below. Only call tools when needed; \
if no tool call is needed, answer the question directly.

## Available Tools

<tools>
{tools}
</tools>"""


def describe_tool(tool: ToolDescriptor) -> str:
    return (
        "<tool>\n"
        f"  <name>{tool.name}</name>\n"
        f"  <description>{tool.description}</description>\n"
        f"  <arguments>{json.dumps(tool.input_schema, ensure_ascii=False)}</arguments>\n"
        "</tool>"
    )


def build_tool_system_prompt(base_prompt: str, tools: Iterable[ToolDescriptor]) -> str:
    """Append tool-use instructions and tool descriptions to *base_prompt*."""
    listing = "\n".join(describe_tool(t) for t in tools)
    if not listing:
        return base_prompt
    # str.replace rather than format(): the template contains literal braces
    block = _TOOL_USE_INSTRUCTIONS.replace("{tools}", listing)
    if base_prompt:
        return f"{base_prompt.rstrip()}\n\n{block}"
    return block


def format_tool_result(name: str, response: ToolResponse) -> str:
    """Render one tool outcome as a ``<tool_use_result>`` block."""
    if response.is_error:
        return (
            "<tool_use_result>\n"
            f"  <name>{name}</name>\n"
            f"  <error>{response.text}</error>\n"
            "</tool_use_result>"
        )
    only_text = all(part.get("type") == "text" for part in response.content)
    body = response.text if only_text else json.dumps(response.content, ensure_ascii=False)
    return (
        "<tool_use_result>\n"
        f"  <name>{name}</name>\n"
        f"  <result>{body}</result>\n"
        "</tool_use_result>"
    )
