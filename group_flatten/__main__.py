from group_flatten.main import main

main()
