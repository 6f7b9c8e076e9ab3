"""wikisync: 上游 wiki 目录的三阶段增量镜像。"""

__version__ = "0.1.0"
