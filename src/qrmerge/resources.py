from importlib import resources


def load_default_template() -> str:
    with resources.files(__package__).joinpath("data/template.svg").open("r", encoding="utf-8") as fh:
        return fh.read()


def load_default_logo() -> str:
    with resources.files(__package__).joinpath("data/logo.svg").open("r", encoding="utf-8") as fh:
        return fh.read()
