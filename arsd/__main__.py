from arsd.server import main

main()
