from toolgate.main import main

main()
