from axys_mcp.cli import main

main()
