from contextbridge.cli.main import main

main()
