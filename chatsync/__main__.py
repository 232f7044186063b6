from chatsync.main import cli_main

cli_main()
