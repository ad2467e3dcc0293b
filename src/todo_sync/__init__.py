"""
ローカルファーストな週間Todoの同期・競合解決エンジン
"""

__version__ = "0.3.0"
