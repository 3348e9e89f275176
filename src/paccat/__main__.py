from paccat.CLI import paccat

if __name__ == "__main__":
    paccat(prog_name="paccat")
