"""Allow running as: python -m mcpx"""

from mcpx.cli import main

if __name__ == "__main__":
    main(prog_name="mcpx")
