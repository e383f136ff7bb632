from reviewgate.cli import main

main()
