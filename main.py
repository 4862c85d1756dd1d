#!/usr/bin/env python

from regflow.cli import main


if __name__ == "__main__":
    main()
