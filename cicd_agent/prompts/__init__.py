"""系统提示词加载工具。

按 Agent 类型和语言(locale) 从 prompts/<locale> 目录
读取对应的 system prompt 文本，用于构造 ChatMessage(role="system").
"""

from pathlib import Path


PROMPTS_DIR = Path(__file__).resolve().parent


def load_system_prompt(agent_type: str = "cicd-agent", locale: str = "zh") -> str:
    """根据 Agent 类型和语言加载系统提示词文本。

    找不到对应语言时回退到英文版本。
    """

    fname = f"{agent_type.replace('-', '_')}_system.md"
    path = PROMPTS_DIR / locale / fname
    if not path.exists():
        path = PROMPTS_DIR / "en" / fname
    return path.read_text(encoding="utf-8")
