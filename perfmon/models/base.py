from sqlalchemy import BigInteger, Integer
from sqlalchemy.orm import declarative_base


Base = declarative_base()

# sqlite only autoincrements INTEGER PRIMARY KEY columns
BigIntPK = BigInteger().with_variant(Integer, 'sqlite')
