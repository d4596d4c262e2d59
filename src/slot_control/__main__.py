from slot_control.cli.main import main

main()
