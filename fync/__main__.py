from fync.cli import main

main()
