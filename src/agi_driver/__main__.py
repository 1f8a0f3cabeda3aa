"""agi-driver MCP 入口点。

支持: python -m agi_driver
"""

from .app import main

if __name__ == "__main__":
    main()
