"""Run the mco-operator command line tool."""

from mco_operator.tool.mco_operator import main

if __name__ == "__main__":
    main()
