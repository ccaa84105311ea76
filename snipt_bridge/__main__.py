from snipt_bridge.cli import main

main()
