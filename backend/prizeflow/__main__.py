from prizeflow.main import main

main()
