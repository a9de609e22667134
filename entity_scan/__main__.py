from entity_scan.cli import main

main()
