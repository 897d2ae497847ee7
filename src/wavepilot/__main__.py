from wavepilot.cli import main

main()
