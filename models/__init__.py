from models.secret_version import SecretVersion
