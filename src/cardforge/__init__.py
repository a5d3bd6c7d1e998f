"""CardForge - イベントソーシングによる製造トラッキング"""

__version__ = "0.1.0"
