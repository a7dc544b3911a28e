"""AI Observer：人类与多个 LLM Agent 同处一个群聊的模拟器后端。"""

__version__ = "0.1.0"
