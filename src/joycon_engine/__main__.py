from joycon_engine.cli import main

main()
