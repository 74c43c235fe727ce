 # This module handles story context engineering

# +---------------------+
# |      Session        |   (Persistent, unbounded, saved by the coordinator)
# |---------------------|
# | Segment history     |
# | Action history      |
# | Custom scene        |
# +---------------------+

# +---------------------+
# |   Current turn      |   (Immediate, always sent)
# |---------------------|
# | Previous segment    |
# | Previous action     |
# | Current scene       |
# +---------------------+

#    \    /
#     \  /
#      \/
# +------------------------------+
# |           Context            |   (Packed to fit the token budget)
# |------------------------------|
# | Older Story/Action pairs     |
# |   (newest kept first)        |
# | Immediate block              |
# | Mode instructions            |
# +------------------------------+
#         |
#         v
#   [Narrator / response parser]
